"""Retention-bounded history store.

This is the only component that writes telemetry to the key-value store.
Every device has one list, most recent reading first, bounded in length.
Writes are single atomic store operations so several bridge processes can
share one store without interleaving a prepend and its trim.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from pydantic import ValidationError

from pyfleet import _constants as c
from pyfleet._kv import KeyValueStore
from pyfleet.config import FleetConfig
from pyfleet.exceptions import StoreError, StoreTimeoutError
from pyfleet.models import READING_TYPES, DeviceKind, GpsFix, Reading
from pyfleet.state.policy import fill_missing, idempotency_key

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")

HISTORY_PREFIX = "telemetry"
GPS_CACHE_PREFIX = "gps:last"


def history_key(kind: DeviceKind, device_id: str) -> str:
    return f"{HISTORY_PREFIX}:{kind}:{device_id}"


def gps_cache_key(device_id: str) -> str:
    return f"{GPS_CACHE_PREFIX}:{device_id}"


class HistoryStore:
    """Per-device bounded history on top of a :class:`~pyfleet._kv.KeyValueStore`.

    Store failures surface as :class:`~pyfleet.exceptions.StoreError`; there
    are no internal retries. Every call is bounded by *timeout* seconds and
    raises :class:`~pyfleet.exceptions.StoreTimeoutError` when exceeded.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_history: int = c.MAX_HISTORY,
        station_max_history: int = c.MAX_HISTORY,
        station_ttl_seconds: int = c.STATION_TTL_SECONDS,
        gps_cache_ttl_seconds: int = c.GPS_CACHE_TTL_SECONDS,
        timeout: float = c.STORE_TIMEOUT_SECONDS,
    ) -> None:
        self._kv = kv
        self._max_len = {
            DeviceKind.VEHICLE: max_history,
            DeviceKind.CHARGING_STATION: station_max_history,
        }
        self._station_ttl_seconds = station_ttl_seconds
        self._gps_cache_ttl_seconds = gps_cache_ttl_seconds
        self._timeout = timeout

    @classmethod
    def from_config(cls, kv: KeyValueStore, config: FleetConfig) -> HistoryStore:
        return cls(
            kv,
            max_history=config.max_history,
            station_max_history=config.station_max_history,
            station_ttl_seconds=config.station_ttl_seconds,
            gps_cache_ttl_seconds=config.gps_cache_ttl_seconds,
            timeout=config.store_timeout,
        )

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    def max_len(self, kind: DeviceKind) -> int:
        return self._max_len[kind]

    async def _bounded(self, awaitable: Awaitable[_T], command: str) -> _T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except TimeoutError as exc:
            raise StoreTimeoutError(f"{command} exceeded {self._timeout:.1f}s", command=command) from exc

    def _decode(self, kind: DeviceKind, raw: str | None) -> Reading | None:
        if raw is None:
            return None
        try:
            return READING_TYPES[kind].model_validate_json(raw)
        except ValidationError:
            _logger.warning("Skipping undecodable %s history entry: %.100s", kind, raw)
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, reading: Reading) -> int:
        """Prepend *reading* and trim to the retention bound in one operation.

        Returns the new history length.
        """
        key = history_key(reading.kind, reading.device_id)
        length = await self._bounded(
            self._kv.list_prepend(key, reading.to_json(), max_len=self.max_len(reading.kind)),
            "append",
        )
        _logger.debug("Appended %s/%s ts=%s len=%d", reading.kind, reading.device_id, reading.ts, length)

        if reading.kind == DeviceKind.CHARGING_STATION:
            await self._apply_station_ttl(key)
        gps = getattr(reading, "gps", None)
        if isinstance(gps, GpsFix) and gps.has_position:
            await self._cache_gps(reading.device_id, gps)
        return length

    async def _apply_station_ttl(self, key: str) -> None:
        if self._station_ttl_seconds > 0:
            await self._bounded(self._kv.expire(key, self._station_ttl_seconds), "expire")
        else:
            await self._bounded(self._kv.persist(key), "persist")

    async def _cache_gps(self, device_id: str, gps: GpsFix) -> None:
        try:
            await self._bounded(
                self._kv.set(
                    gps_cache_key(device_id),
                    gps.model_dump_json(exclude_none=True),
                    ttl_seconds=self._gps_cache_ttl_seconds,
                ),
                "gps-cache",
            )
        except StoreError as exc:
            _logger.warning("GPS cache update failed for %s: %s", device_id, exc)

    async def merge_head(self, candidate: Reading) -> Reading | None:
        """Fill fields missing from the stored head with *candidate*'s values.

        The write is a conditional set that only succeeds while the head is
        still the entry that was read. Returns the merged head, or ``None``
        when the head vanished or changed concurrently.
        """
        key = history_key(candidate.kind, candidate.device_id)
        raw = await self._bounded(self._kv.list_index(key, 0), "merge-read")
        head = self._decode(candidate.kind, raw)
        if raw is None or head is None:
            return None

        patch = fill_missing(candidate, head)
        if not patch:
            return head
        merged = head.with_patch(patch)
        swapped = await self._bounded(self._kv.list_set_if(key, 0, raw, merged.to_json()), "merge-write")
        if not swapped:
            _logger.debug("Head of %s changed during merge", key)
            return None

        _logger.debug("Merged %s into head of %s", sorted(patch), key)
        gps = getattr(merged, "gps", None)
        if "gps" in patch and isinstance(gps, GpsFix):
            await self._cache_gps(merged.device_id, gps)
        return merged

    async def claim_idempotency(self, reading: Reading, ttl_seconds: int) -> bool:
        """Set the idempotency marker for *reading* if nobody holds it yet."""
        return await self._bounded(
            self._kv.set(idempotency_key(reading), str(reading.ts), ttl_seconds=ttl_seconds, only_if_absent=True),
            "idempotency",
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def latest(self, kind: DeviceKind, device_id: str) -> Reading | None:
        raw = await self._bounded(self._kv.list_index(history_key(kind, device_id), 0), "latest")
        return self._decode(kind, raw)

    async def history(self, kind: DeviceKind, device_id: str, limit: int | None = None) -> list[Reading]:
        """Most-recent-first history, clamped to the retention bound."""
        bound = self.max_len(kind)
        count = bound if limit is None else max(0, min(limit, bound))
        if count == 0:
            return []
        raw_items = await self._bounded(self._kv.list_range(history_key(kind, device_id), 0, count - 1), "history")
        readings: list[Reading] = []
        for raw in raw_items:
            reading = self._decode(kind, raw)
            if reading is not None:
                readings.append(reading)
        return readings

    async def devices(self, kind: DeviceKind) -> list[str]:
        """Sorted ids of devices with stored history."""
        prefix = f"{HISTORY_PREFIX}:{kind}:"
        keys = await self._bounded(self._kv.keys(f"{prefix}*"), "devices")
        return sorted({k[len(prefix) :] for k in keys if k.startswith(prefix) and len(k) > len(prefix)})

    async def last_known_gps(self, device_id: str) -> GpsFix | None:
        raw = await self._bounded(self._kv.get(gps_cache_key(device_id)), "gps-cache-read")
        if raw is None:
            return None
        try:
            fix = GpsFix.model_validate_json(raw)
        except ValidationError:
            _logger.warning("Discarding undecodable GPS cache entry for %s", device_id)
            return None
        return fix if fix.has_position else None
