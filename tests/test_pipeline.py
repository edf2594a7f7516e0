from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from pyfleet._kv import MemoryKeyValueStore
from pyfleet.config import FleetConfig
from pyfleet.exceptions import StoreError
from pyfleet.ingestion.pipeline import IngestionPipeline
from pyfleet.models import BatteryReading, DeviceKind
from pyfleet.state.events import IngestOutcome
from pyfleet.state.status import evaluate_status
from pyfleet.state.store import HistoryStore

T = 1_700_000_000_000


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> Any:
        return self.now


class _FlakyStore(MemoryKeyValueStore):
    """Memory store whose writes fail while ``failing`` is set."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failing = False

    async def list_prepend(self, key: str, value: str, *, max_len: int | None = None) -> int:
        if self.failing:
            raise StoreError("connection reset", command="LPUSH")
        return await super().list_prepend(key, value, max_len=max_len)


class _MarkerFailingStore(MemoryKeyValueStore):
    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None, only_if_absent: bool = False) -> bool:
        if only_if_absent:
            raise StoreError("SET NX failed", command="SET")
        return await super().set(key, value, ttl_seconds=ttl_seconds)


class _ConflictingStore(MemoryKeyValueStore):
    async def list_set_if(self, key: str, index: int, expected: str, value: str) -> bool:
        return False


def _pipeline(kv: MemoryKeyValueStore | None = None, *, now: int = T, **config: Any) -> IngestionPipeline:
    store = HistoryStore(kv or MemoryKeyValueStore())
    return IngestionPipeline(store, config=FleetConfig(mqtt_enabled=False, **config), clock=_Clock(now))


def _battery_payload(**fields: Any) -> bytes:
    return json.dumps(fields).encode()


async def _history(pipeline: IngestionPipeline, device_id: str = "V-1") -> list[Any]:
    return await pipeline.store.history(DeviceKind.VEHICLE, device_id)


@pytest.mark.asyncio
async def test_end_to_end_vehicle_scenario() -> None:
    pipeline = _pipeline()

    first = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    again = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    assert first.outcome == IngestOutcome.STORED
    assert first.history_length == 1
    assert again.outcome == IngestOutcome.DUPLICATE
    assert len(await _history(pipeline)) == 1

    later = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=79, voltage=12.0, ts=T + 40_000))
    assert later.outcome == IngestOutcome.STORED
    history = await _history(pipeline)
    assert len(history) == 2
    assert history[0].soc == 79.0

    status = evaluate_status(history[0], T + 40_000 + 400_000)
    assert status.timeout_flag is True
    assert pipeline.outcomes == {"stored": 2, "duplicate": 1}


@pytest.mark.asyncio
async def test_garbage_is_rejected_without_raising(caplog: pytest.LogCaptureFixture) -> None:
    pipeline = _pipeline()
    with caplog.at_level("WARNING", logger="pyfleet.ingestion.pipeline"):
        result = await pipeline.handle_message("fleet/V-1/battery", b"{{{garbage")

    assert result.outcome == IngestOutcome.REJECTED
    assert not result.persisted
    assert "{{{garbage" in caplog.text
    assert await _history(pipeline) == []
    assert len(pipeline.retry_queue) == 0


@pytest.mark.asyncio
async def test_bad_topic_is_rejected() -> None:
    pipeline = _pipeline()
    result = await pipeline.handle_message("fleet/V-1/unknown", _battery_payload(soc=80))
    assert result.outcome == IngestOutcome.REJECTED


@pytest.mark.asyncio
async def test_status_message_is_not_stored() -> None:
    pipeline = _pipeline()
    result = await pipeline.handle_message("fleet/V-1/status", b"online")
    assert result.outcome == IngestOutcome.STATUS
    assert result.detail == "online"
    assert result.device_id == "V-1"
    assert await pipeline.store.devices(DeviceKind.VEHICLE) == []


@pytest.mark.asyncio
async def test_diagnostic_placeholder_is_rejected() -> None:
    pipeline = _pipeline(diagnostic_mode=True)
    result = await pipeline.handle_message("fleet/V-1/battery", b"{{{garbage")
    assert result.outcome == IngestOutcome.REJECTED
    assert result.detail == "missing soc"
    assert result.device_id == "V-1"
    assert await _history(pipeline) == []


@pytest.mark.asyncio
async def test_older_reading_merges_into_head() -> None:
    pipeline = _pipeline()
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=T))
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, voltage=12.1, ts=T - 1))

    assert result.outcome == IngestOutcome.MERGED
    assert result.detail == "voltage"
    assert result.persisted
    history = await _history(pipeline)
    assert len(history) == 1
    assert history[0].ts == T
    assert history[0].voltage == 12.1


@pytest.mark.asyncio
async def test_small_timestamps_merge_without_moving_head() -> None:
    pipeline = _pipeline()
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=1000))
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, voltage=12.1, ts=999))

    assert result.outcome == IngestOutcome.MERGED
    head = await pipeline.store.latest(DeviceKind.VEHICLE, "V-1")
    assert head is not None
    assert head.ts == 1000
    assert head.voltage == 12.1
    assert len(await _history(pipeline)) == 1


@pytest.mark.asyncio
async def test_far_behind_reading_is_out_of_order() -> None:
    pipeline = _pipeline()
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=T))
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=50, voltage=12.1, ts=T - 10_000))

    assert result.outcome == IngestOutcome.OUT_OF_ORDER
    history = await _history(pipeline)
    assert len(history) == 1
    assert history[0].voltage is None


@pytest.mark.asyncio
async def test_repeated_merge_conflict_gives_up() -> None:
    pipeline = _pipeline(_ConflictingStore())
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=T))
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, voltage=12.1, ts=T - 1))
    assert result.outcome == IngestOutcome.OUT_OF_ORDER
    assert result.detail == "merge conflict"


@pytest.mark.asyncio
async def test_store_failure_queues_and_retry_delivers() -> None:
    kv = _FlakyStore()
    pipeline = _pipeline(kv)
    kv.failing = True

    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    assert result.outcome == IngestOutcome.QUEUED
    assert len(pipeline.retry_queue) == 1
    assert await _history(pipeline) == []

    kv.failing = False
    assert await pipeline.retry_queue.drain_tick() == 1
    history = await _history(pipeline)
    assert [r.ts for r in history] == [T]


@pytest.mark.asyncio
async def test_late_retry_cannot_regress_head() -> None:
    kv = _FlakyStore()
    pipeline = _pipeline(kv)

    kv.failing = True
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    kv.failing = False
    newer = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=75, ts=T + 60_000))
    assert newer.outcome == IngestOutcome.STORED

    await pipeline.retry_queue.drain_tick()
    history = await _history(pipeline)
    assert [r.ts for r in history] == [T + 60_000]
    assert len(pipeline.retry_queue) == 0


@pytest.mark.asyncio
async def test_redeliver_raises_store_errors() -> None:
    kv = _FlakyStore()
    pipeline = _pipeline(kv)
    kv.failing = True
    with pytest.raises(StoreError):
        await pipeline.redeliver(BatteryReading(device_id="V-1", timestamp=T, soc=80.0))


@pytest.mark.asyncio
async def test_idempotency_marker_suppresses_flapping_values() -> None:
    kv_clock = _Clock(1_000.0)
    pipeline = _pipeline(MemoryKeyValueStore(clock=kv_clock))

    a = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    b = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=T + 1_000))
    a_again = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T + 2_000))
    assert (a.outcome, b.outcome, a_again.outcome) == (
        IngestOutcome.STORED,
        IngestOutcome.STORED,
        IngestOutcome.IDEMPOTENCY,
    )

    kv_clock.now += 31
    released = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T + 3_000))
    assert released.outcome == IngestOutcome.STORED
    assert len(await _history(pipeline)) == 3


@pytest.mark.asyncio
async def test_marker_store_failure_does_not_block_write() -> None:
    pipeline = _pipeline(_MarkerFailingStore())
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T))
    assert result.outcome == IngestOutcome.STORED


@pytest.mark.asyncio
async def test_future_reading_is_out_of_order() -> None:
    pipeline = _pipeline(now=T)
    await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=80, ts=T - 60_000))
    result = await pipeline.handle_message("fleet/V-1/battery", _battery_payload(soc=70, ts=T + 3_600_000))
    assert result.outcome == IngestOutcome.OUT_OF_ORDER


@pytest.mark.asyncio
async def test_concurrent_identical_messages_store_once() -> None:
    pipeline = _pipeline()
    payload = _battery_payload(soc=80, ts=T)
    results = await asyncio.gather(*(pipeline.handle_message("fleet/V-1/battery", payload) for _ in range(5)))

    outcomes = sorted(str(r.outcome) for r in results)
    assert outcomes == ["duplicate"] * 4 + ["stored"]
    assert len(await _history(pipeline)) == 1


@pytest.mark.asyncio
async def test_http_payload_uses_route_device_id() -> None:
    pipeline = _pipeline()
    result = await pipeline.ingest_payload(DeviceKind.VEHICLE, "V-1", {"device": "V-9", "soc": 80, "ts": T})
    assert result.outcome == IngestOutcome.STORED
    assert result.device_id == "V-1"

    rejected = await pipeline.ingest_payload(DeviceKind.VEHICLE, "V-1", b"not json at all {")
    assert rejected.outcome == IngestOutcome.REJECTED


@pytest.mark.asyncio
async def test_station_payload_is_stamped_with_receive_time() -> None:
    pipeline = _pipeline(now=T + 5_000)
    result = await pipeline.ingest_payload(
        DeviceKind.CHARGING_STATION,
        "CN-1",
        {"stationId": "CN-1", "status": "charging", "ts": T - 3_600_000},
    )
    assert result.outcome == IngestOutcome.STORED
    assert result.ts == T + 5_000
    assert result.kind == DeviceKind.CHARGING_STATION


@pytest.mark.asyncio
async def test_vehicle_and_station_ids_do_not_collide() -> None:
    pipeline = _pipeline(now=T)
    await pipeline.handle_message("fleet/X-1/battery", _battery_payload(soc=80, ts=T))
    station = await pipeline.handle_message("fleet/chargenode/X-1", json.dumps({"status": "idle"}).encode())
    assert station.outcome == IngestOutcome.STORED
    assert await pipeline.store.devices(DeviceKind.VEHICLE) == ["X-1"]
    assert await pipeline.store.devices(DeviceKind.CHARGING_STATION) == ["X-1"]


@pytest.mark.asyncio
async def test_device_locks_are_released_after_ingest() -> None:
    pipeline = _pipeline()
    for i in range(20):
        await pipeline.handle_message(f"fleet/V-{i}/battery", _battery_payload(soc=80, ts=T))

    assert len(pipeline._locks) == 0
