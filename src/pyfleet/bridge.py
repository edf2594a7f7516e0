"""Bridge service: wires broker, pipeline, store and retry timer together."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import aiohttp

from pyfleet import _constants as c
from pyfleet._kv import KeyValueStore, MemoryKeyValueStore
from pyfleet._mqtt import FleetMqttRuntime
from pyfleet._redact import redact_for_log
from pyfleet._transport import UpstashTransport
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetError
from pyfleet.ingestion.pipeline import IngestionPipeline, now_ms
from pyfleet.models import ChargingStationReading, DeviceKind, DeviceStatus, GpsFix, Reading, TrackPoint
from pyfleet.state.events import IngestResult
from pyfleet.state.status import evaluate_status, station_sort_key
from pyfleet.state.store import HistoryStore

_logger = logging.getLogger(__name__)


class FleetBridge:
    """Telemetry bridge.

    Usage::

        async with FleetBridge(FleetConfig.from_env()) as bridge:
            status = await bridge.status(DeviceKind.VEHICLE, "PE-001")

    Parameters
    ----------
    config
        Bridge configuration.
    kv
        Key-value store to use instead of the one derived from *config*
        (Upstash REST when ``redis_rest_url`` is set, memory otherwise).
    session
        Shared :class:`aiohttp.ClientSession` for the Upstash transport.
    clock
        Epoch milliseconds.
    """

    def __init__(
        self,
        config: FleetConfig,
        *,
        kv: KeyValueStore | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._config = config
        self._kv = kv
        self._owns_kv = kv is None
        self._external_session = session is not None
        self._http_session = session
        self._clock = clock
        self._store: HistoryStore | None = None
        self._pipeline: IngestionPipeline | None = None
        self._mqtt: FleetMqttRuntime | None = None
        self._tasks: set[asyncio.Task[IngestResult]] = set()
        self._started_at: float | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetBridge:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._pipeline is not None:
            return
        _logger.debug("Bridge config: %s", redact_for_log(dataclasses.asdict(self._config)))

        if self._kv is None:
            self._kv = self._build_kv()
        self._store = HistoryStore.from_config(self._kv, self._config)
        self._pipeline = IngestionPipeline(self._store, config=self._config, clock=self._clock)
        self._pipeline.retry_queue.start()

        if self._config.mqtt_enabled:
            self._mqtt = FleetMqttRuntime(
                loop=asyncio.get_running_loop(),
                config=self._config,
                on_message=self._on_mqtt_message,
            )
            self._mqtt.start()
        self._started_at = time.monotonic()
        _logger.info(
            "Bridge started (store=%s, mqtt=%s)",
            self.store_backend,
            "on" if self._mqtt is not None else "off",
        )

    def _build_kv(self) -> KeyValueStore:
        if self._config.uses_redis:
            if not self._config.redis_rest_token:
                raise FleetError("UPSTASH_REDIS_REST_TOKEN is required with UPSTASH_REDIS_REST_URL")
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            return UpstashTransport(
                self._config.redis_rest_url or "",
                self._config.redis_rest_token,
                http_session=self._http_session,
                timeout=self._config.store_timeout,
            )
        _logger.warning("No Redis REST URL configured, keeping history in process memory")
        return MemoryKeyValueStore()

    async def stop(self) -> None:
        if self._mqtt is not None:
            self._mqtt.stop()
            self._mqtt = None
        await self.drain_pending()
        if self._pipeline is not None:
            await self._pipeline.retry_queue.stop()
            pending = len(self._pipeline.retry_queue)
            if pending:
                _logger.warning("Bridge stopping with %d readings still queued for retry", pending)
        if self._owns_kv and self._kv is not None:
            await self._kv.close()
            self._kv = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._pipeline = None
        self._store = None
        self._started_at = None
        _logger.info("Bridge stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_pipeline(self) -> IngestionPipeline:
        if self._pipeline is None:
            raise FleetError("Bridge not started. Use 'async with FleetBridge(...) as bridge:'")
        return self._pipeline

    def _require_store(self) -> HistoryStore:
        if self._store is None:
            raise FleetError("Bridge not started. Use 'async with FleetBridge(...) as bridge:'")
        return self._store

    def _on_mqtt_message(self, topic: str, payload: bytes, received_at_ms: int) -> None:
        if self._pipeline is None:
            _logger.debug("Dropping message on %s received after shutdown", topic)
            return
        task = asyncio.create_task(self._pipeline.handle_message(topic, payload, received_at_ms=received_at_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain_pending(self) -> None:
        """Wait for in-flight broker messages to finish ingestion."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def pipeline(self) -> IngestionPipeline:
        return self._require_pipeline()

    @property
    def store(self) -> HistoryStore:
        return self._require_store()

    @property
    def is_running(self) -> bool:
        return self._pipeline is not None

    @property
    def store_backend(self) -> str:
        if isinstance(self._kv, UpstashTransport):
            return "upstash"
        if isinstance(self._kv, MemoryKeyValueStore):
            return "memory"
        return type(self._kv).__name__ if self._kv is not None else "none"

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest(self, kind: DeviceKind, device_id: str, payload: bytes | str | Mapping[str, Any]) -> IngestResult:
        """HTTP-originated ingestion; same admission rules as the broker path."""
        return await self._require_pipeline().ingest_payload(kind, device_id, payload)

    async def handle_message(self, topic: str, payload: bytes | str) -> IngestResult:
        return await self._require_pipeline().handle_message(topic, payload)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def latest(self, kind: DeviceKind, device_id: str) -> Reading | None:
        return await self._require_store().latest(kind, device_id)

    async def history(self, kind: DeviceKind, device_id: str, limit: int | None = None) -> list[Reading]:
        return await self._require_store().history(kind, device_id, limit)

    async def devices(self, kind: DeviceKind) -> list[str]:
        return await self._require_store().devices(kind)

    async def last_known_gps(self, device_id: str) -> GpsFix | None:
        return await self._require_store().last_known_gps(device_id)

    async def status(self, kind: DeviceKind, device_id: str, now: int | None = None) -> DeviceStatus:
        reading = await self.latest(kind, device_id)
        return evaluate_status(
            reading,
            self._clock() if now is None else now,
            kind=kind,
            device_id=device_id,
            stale_threshold_ms=self._config.stale_threshold_ms,
        )

    async def station_overview(self, now: int | None = None) -> list[tuple[ChargingStationReading, DeviceStatus]]:
        """Latest reading and status of every charging station, display-ordered."""
        store = self._require_store()
        current = self._clock() if now is None else now
        rows: list[tuple[ChargingStationReading, DeviceStatus]] = []
        for station_id in await store.devices(DeviceKind.CHARGING_STATION):
            reading = await store.latest(DeviceKind.CHARGING_STATION, station_id)
            if not isinstance(reading, ChargingStationReading):
                continue
            status = evaluate_status(reading, current, stale_threshold_ms=self._config.stale_threshold_ms)
            rows.append((reading, status))
        rows.sort(key=lambda row: station_sort_key(row[1].display_status, row[0].ts))
        return rows

    async def track(self, device_id: str, *, limit: int | None = None, latest_only: bool = False) -> list[TrackPoint]:
        """GPS track of a vehicle, most recent first.

        With *latest_only* at most one point is returned; when no stored
        reading carries a position the last-known GPS cache is used, stamped
        with the head reading's timestamp.
        """
        store = self._require_store()
        count = min(limit or c.TRACKING_HISTORY_LIMIT, c.TRACKING_HISTORY_LIMIT)
        readings = await store.history(DeviceKind.VEHICLE, device_id, count)

        points: list[TrackPoint] = []
        for reading in readings:
            gps = getattr(reading, "gps", None)
            if not isinstance(gps, GpsFix) or not gps.has_position:
                continue
            points.append(_track_point(device_id, reading.ts, gps))
            if latest_only:
                return points

        if latest_only and readings:
            cached = await store.last_known_gps(device_id)
            if cached is not None:
                return [_track_point(device_id, readings[0].ts, cached)]
        return points

    def status_report(self) -> dict[str, Any]:
        """Running/connected flags, queue depth and counters."""
        mqtt: dict[str, Any] = {"enabled": self._config.mqtt_enabled, "connected": False}
        if self._mqtt is not None:
            mqtt.update(
                connected=self._mqtt.is_connected,
                broker=f"{self._mqtt.broker.host}:{self._mqtt.broker.port}",
                topics=self._mqtt.topics,
                stats=self._mqtt.stats,
            )
        report: dict[str, Any] = {
            "running": self.is_running,
            "store": self.store_backend,
            "namespace": self._config.namespace,
            "mqtt": mqtt,
            "uptimeSeconds": round(time.monotonic() - self._started_at, 1) if self._started_at is not None else 0,
        }
        if self._pipeline is not None:
            queue = self._pipeline.retry_queue
            report["retryQueue"] = {"pending": len(queue), "running": queue.running, **queue.stats}
            report["outcomes"] = self._pipeline.outcomes
        return report


def _track_point(device_id: str, ts: int, gps: GpsFix) -> TrackPoint:
    return TrackPoint(
        device=device_id,
        ts=ts,
        lat=gps.lat,
        lng=gps.lng,
        speed=gps.speed,
        heading=gps.heading,
        altitude=gps.altitude,
    )
