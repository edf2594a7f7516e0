"""Ingestion pipeline: decode → admit → idempotency marker → write.

Both the broker runtime and the HTTP routes feed this one pipeline, so every
reading goes through the same admission rules. Failures never escape:
undecodable messages are rejected, failed writes go to the retry queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections import Counter
from collections.abc import Callable, Mapping
from typing import Any

from pyfleet._redact import payload_preview
from pyfleet.config import FleetConfig
from pyfleet.exceptions import DecodeError, MalformedPayloadError, StoreError
from pyfleet.ingestion.decode import build_reading, decode_message, parse_json_payload
from pyfleet.ingestion.retry import RetryQueue
from pyfleet.models import DeviceKind, Reading, StatusReport
from pyfleet.state.events import AdmitDecision, IngestOutcome, IngestResult
from pyfleet.state.policy import AdmitPolicy, admit
from pyfleet.state.store import HistoryStore

_logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class IngestionPipeline:
    """Admit readings into a :class:`~pyfleet.state.store.HistoryStore`.

    Parameters
    ----------
    store
        History store to write to.
    config
        Thresholds, namespace and decoder options.
    retry_queue
        Queue for failed writes. Built from *config* (delivering through
        :meth:`redeliver`) when omitted.
    clock
        Epoch milliseconds; used as receive time and for the clock-skew guard.
    """

    def __init__(
        self,
        store: HistoryStore,
        *,
        config: FleetConfig | None = None,
        retry_queue: RetryQueue | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._config = config or FleetConfig()
        self._policy = AdmitPolicy.from_config(self._config)
        self._clock = clock
        self._retry = retry_queue or RetryQueue(
            self.redeliver,
            capacity=self._config.retry_capacity,
            max_attempts=self._config.retry_max_attempts,
            interval=self._config.retry_interval,
        )
        self._locks: weakref.WeakValueDictionary[tuple[DeviceKind, str], asyncio.Lock] = weakref.WeakValueDictionary()
        self._outcomes: Counter[IngestOutcome] = Counter()

    @property
    def store(self) -> HistoryStore:
        return self._store

    @property
    def policy(self) -> AdmitPolicy:
        return self._policy

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry

    @property
    def outcomes(self) -> dict[str, int]:
        """Outcome counters since start."""
        return {str(k): v for k, v in self._outcomes.items()}

    def _lock_for(self, reading: Reading) -> asyncio.Lock:
        # Weakly held: a lock lives only while a task holds or awaits it.
        key = (reading.kind, reading.device_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _finish(self, outcome: IngestOutcome, reading: Reading | None = None, **extra: Any) -> IngestResult:
        self._outcomes[outcome] += 1
        if reading is None:
            return IngestResult(outcome=outcome, **extra)
        return IngestResult(
            outcome=outcome,
            kind=reading.kind,
            device_id=reading.device_id,
            ts=reading.ts,
            **extra,
        )

    def _reject(self, exc: DecodeError, payload: Any) -> IngestResult:
        preview = exc.preview if isinstance(exc, MalformedPayloadError) and exc.preview else None
        if preview is None:
            preview = payload_preview(payload) if isinstance(payload, (bytes, str)) else repr(payload)[:100]
        _logger.warning("Rejected message topic=%s: %s (payload: %s)", exc.topic or "-", exc, preview)
        return self._finish(IngestOutcome.REJECTED, detail=str(exc))

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_message(self, topic: str, payload: bytes | str, *, received_at_ms: int | None = None) -> IngestResult:
        """Broker path: decode one ``(topic, payload)`` message and ingest it."""
        received = received_at_ms if received_at_ms is not None else self._clock()
        try:
            decoded = decode_message(
                topic,
                payload,
                received_at_ms=received,
                namespace=self._config.namespace,
                diagnostic=self._config.diagnostic_mode,
                station_bridge_timestamps=self._config.station_bridge_timestamps,
            )
        except DecodeError as exc:
            return self._reject(exc, payload)

        if isinstance(decoded, StatusReport):
            _logger.info("Device %s reported status %r", decoded.device_id, decoded.status)
            return self._finish(
                IngestOutcome.STATUS,
                kind=DeviceKind.VEHICLE,
                device_id=decoded.device_id,
                ts=decoded.timestamp,
                detail=decoded.status,
            )
        return await self.ingest(decoded)

    async def ingest_payload(
        self,
        kind: DeviceKind,
        device_id: str,
        payload: bytes | str | Mapping[str, Any],
    ) -> IngestResult:
        """HTTP path: validate a body for *device_id* and ingest it."""
        received = self._clock()
        source = f"http:{kind}/{device_id}"
        try:
            data = payload if isinstance(payload, Mapping) else parse_json_payload(payload, topic=source)
            use_payload_timestamp = not (
                kind == DeviceKind.CHARGING_STATION and self._config.station_bridge_timestamps
            )
            reading = build_reading(
                kind,
                device_id,
                data,
                received_at_ms=received,
                use_payload_timestamp=use_payload_timestamp,
                topic=source,
            )
        except DecodeError as exc:
            return self._reject(exc, payload)
        return await self.ingest(reading)

    async def ingest(self, reading: Reading) -> IngestResult:
        """Admit and persist an already-decoded reading."""
        if not reading.has_primary_field():
            alerts = getattr(reading, "alerts", None) or []
            _logger.warning(
                "Rejected %s/%s: no %s%s",
                reading.kind,
                reading.device_id,
                reading.PRIMARY_FIELD,
                f" (alerts: {', '.join(alerts)})" if alerts else "",
            )
            return self._finish(IngestOutcome.REJECTED, reading, detail=f"missing {reading.PRIMARY_FIELD}")

        async with self._lock_for(reading):
            try:
                return await self._admit_and_write(reading, claim=True)
            except StoreError as exc:
                _logger.warning(
                    "Store write failed for %s/%s ts=%s, queued for retry: %s",
                    reading.kind,
                    reading.device_id,
                    reading.ts,
                    exc,
                )
                self._retry.enqueue(reading)
                return self._finish(IngestOutcome.QUEUED, reading, detail=str(exc))

    async def redeliver(self, reading: Reading) -> IngestResult:
        """Retry-queue delivery: re-admit against the current head.

        The idempotency marker is not claimed again. Raises
        :class:`~pyfleet.exceptions.StoreError` when the store still fails.
        """
        async with self._lock_for(reading):
            return await self._admit_and_write(reading, claim=False)

    # ------------------------------------------------------------------
    # Admit → write
    # ------------------------------------------------------------------

    async def _admit_and_write(self, reading: Reading, *, claim: bool) -> IngestResult:
        for attempt in range(2):
            head = await self._store.latest(reading.kind, reading.device_id)
            result = admit(reading, head, policy=self._policy, now_ms=self._clock())

            if result.decision == AdmitDecision.DISCARD:
                assert result.reason is not None  # noqa: S101
                _logger.debug(
                    "Discarded %s/%s ts=%s: %s",
                    reading.kind,
                    reading.device_id,
                    reading.ts,
                    result.reason,
                )
                return self._finish(IngestResult.outcome_for(result.reason), reading)

            if result.decision == AdmitDecision.MERGE:
                merged = await self._store.merge_head(reading)
                if merged is None:
                    _logger.debug("Merge conflict on %s/%s (attempt %d)", reading.kind, reading.device_id, attempt + 1)
                    continue
                return self._finish(IngestOutcome.MERGED, reading, detail=",".join(sorted(result.patch)))

            if claim and not await self._claim(reading):
                _logger.debug("Idempotency marker already held for %s/%s ts=%s", reading.kind, reading.device_id, reading.ts)
                return self._finish(IngestOutcome.IDEMPOTENCY, reading)

            length = await self._store.append(reading)
            return self._finish(IngestOutcome.STORED, reading, history_length=length)

        _logger.debug("Giving up on %s/%s ts=%s after repeated merge conflicts", reading.kind, reading.device_id, reading.ts)
        return self._finish(IngestOutcome.OUT_OF_ORDER, reading, detail="merge conflict")

    async def _claim(self, reading: Reading) -> bool:
        try:
            return await self._store.claim_idempotency(reading, self._policy.idempotency_ttl_seconds)
        except StoreError as exc:
            _logger.warning("Idempotency marker for %s/%s not set: %s", reading.kind, reading.device_id, exc)
            return True
