"""Staleness / status evaluation.

Status is derived on every query from the stored head and the caller's
clock; it is never written back.
"""

from __future__ import annotations

from pyfleet import _constants as c
from pyfleet.models import ChargingStationReading, DeviceKind, DeviceState, DeviceStatus, Reading, ms_to_datetime
from pyfleet.state.store import HistoryStore


def evaluate_status(
    reading: Reading | None,
    now_ms: int,
    *,
    kind: DeviceKind | None = None,
    device_id: str | None = None,
    stale_threshold_ms: int = c.STALE_THRESHOLD_MS,
) -> DeviceStatus:
    """Classify a device from its latest reading.

    ``kind``/``device_id`` are only needed when *reading* is ``None`` (they
    are otherwise taken from the reading).
    """
    if reading is None:
        return DeviceStatus(
            device_id=device_id or "",
            kind=kind or DeviceKind.VEHICLE,
            state=DeviceState.OFFLINE,
            online=False,
            timeout_flag=False,
            display_status=str(DeviceState.OFFLINE),
        )

    age_ms = now_ms - reading.ts
    timeout_flag = age_ms > stale_threshold_ms
    state = DeviceState.TIMEOUT if timeout_flag else DeviceState.ONLINE

    display_status: str = state
    if isinstance(reading, ChargingStationReading):
        display_status = DeviceState.OFFLINE if timeout_flag else (reading.status or DeviceState.OFFLINE)

    return DeviceStatus(
        device_id=reading.device_id,
        kind=reading.kind,
        state=state,
        online=not timeout_flag,
        timeout_flag=timeout_flag,
        display_status=str(display_status),
        last_update=ms_to_datetime(reading.ts),
        age_ms=age_ms,
    )


async def device_status(
    store: HistoryStore,
    kind: DeviceKind,
    device_id: str,
    now_ms: int,
    *,
    stale_threshold_ms: int = c.STALE_THRESHOLD_MS,
) -> DeviceStatus:
    reading = await store.latest(kind, device_id)
    return evaluate_status(
        reading,
        now_ms,
        kind=kind,
        device_id=device_id,
        stale_threshold_ms=stale_threshold_ms,
    )


def station_sort_key(display_status: str, ts: int) -> tuple[int, int]:
    """Overview ordering: status priority first, then newest first."""
    priority = c.STATION_STATUS_PRIORITY.get(display_status, len(c.STATION_STATUS_PRIORITY))
    return priority, -ts
