from __future__ import annotations

from typing import Any

from pyfleet.config import FleetConfig
from pyfleet.models import BatteryReading, ChargingStationReading, GpsFix
from pyfleet.state.events import AdmitDecision, DiscardReason
from pyfleet.state.policy import (
    AdmitPolicy,
    admit,
    fill_missing,
    idempotency_fingerprint,
    idempotency_key,
    is_similar,
)

T = 1_700_000_000_000
POLICY = AdmitPolicy()


def _battery(ts: int = T, **fields: Any) -> BatteryReading:
    fields.setdefault("soc", 70.0)
    return BatteryReading(device_id="PE-001", timestamp=ts, **fields)


def _station(ts: int = T, **fields: Any) -> ChargingStationReading:
    fields.setdefault("status", "charging")
    return ChargingStationReading(device_id="CN-1", timestamp=ts, **fields)


class TestAdmitRules:
    def test_no_head_accepts(self) -> None:
        result = admit(_battery(), None, policy=POLICY)
        assert result.decision == AdmitDecision.ACCEPT

    def test_exact_replay_is_duplicate(self) -> None:
        head = _battery(voltage=48.0)
        result = admit(_battery(voltage=48.0), head, policy=POLICY)
        assert result.decision == AdmitDecision.DISCARD
        assert result.reason == DiscardReason.DUPLICATE

    def test_slightly_older_reading_fills_head_gaps(self) -> None:
        head = _battery(T)
        candidate = _battery(T - 1, voltage=12.1)

        result = admit(candidate, head, policy=POLICY)

        assert result.decision == AdmitDecision.MERGE
        assert result.patch == {"voltage": 12.1}
        merged = head.with_patch(result.patch)
        assert merged.ts == T
        assert merged.soc == 70.0
        assert merged.voltage == 12.1

    def test_merge_with_small_millisecond_timestamps(self) -> None:
        head = _battery(1000)
        result = admit(_battery(999, voltage=12.1), head, policy=POLICY)

        assert result.decision == AdmitDecision.MERGE
        assert head.with_patch(result.patch).ts == 1000

    def test_merge_never_overwrites_populated_fields(self) -> None:
        head = _battery(T, voltage=48.0)
        candidate = _battery(T - 100, soc=10.0, voltage=12.1, temperature=25.0)
        result = admit(candidate, head, policy=POLICY)
        assert result.decision == AdmitDecision.MERGE
        assert result.patch == {"temperature": 25.0}

    def test_older_reading_with_nothing_new_is_duplicate(self) -> None:
        head = _battery(T, voltage=48.0)
        result = admit(_battery(T - 3_000, soc=65.0), head, policy=POLICY)
        assert result.reason == DiscardReason.DUPLICATE

    def test_far_behind_head_is_out_of_order(self) -> None:
        head = _battery(T)
        candidate = _battery(T - 10_000, soc=50.0, voltage=12.1)
        result = admit(candidate, head, policy=POLICY)
        assert result.decision == AdmitDecision.DISCARD
        assert result.reason == DiscardReason.OUT_OF_ORDER
        assert result.patch == {}

    def test_out_of_order_threshold_is_inclusive_for_merge(self) -> None:
        head = _battery(T)
        result = admit(_battery(T - 5_000, voltage=12.1), head, policy=POLICY)
        assert result.decision == AdmitDecision.MERGE

    def test_similar_within_window_is_duplicate(self) -> None:
        head = _battery(T, voltage=48.0)
        result = admit(_battery(T + 10_000, voltage=48.0), head, policy=POLICY)
        assert result.reason == DiscardReason.DUPLICATE

    def test_similar_after_window_is_accepted(self) -> None:
        head = _battery(T, voltage=48.0)
        assert admit(_battery(T + 30_000, voltage=48.0), head, policy=POLICY).decision == AdmitDecision.ACCEPT

    def test_changed_value_is_accepted(self) -> None:
        head = _battery(T)
        assert admit(_battery(T + 1_000, soc=69.0), head, policy=POLICY).decision == AdmitDecision.ACCEPT

    def test_future_reading_beyond_skew_is_out_of_order(self) -> None:
        head = _battery(T)
        candidate = _battery(T + 10 * 60 * 1000, soc=60.0)
        result = admit(candidate, head, policy=POLICY, now_ms=T)
        assert result.reason == DiscardReason.OUT_OF_ORDER

    def test_skew_guard_needs_a_clock(self) -> None:
        head = _battery(T)
        candidate = _battery(T + 10 * 60 * 1000, soc=60.0)
        assert admit(candidate, head, policy=POLICY).decision == AdmitDecision.ACCEPT

    def test_skew_guard_can_be_disabled(self) -> None:
        policy = AdmitPolicy(max_clock_skew_ms=None)
        head = _battery(T)
        candidate = _battery(T + 10 * 60 * 1000, soc=60.0)
        assert admit(candidate, head, policy=policy, now_ms=T).decision == AdmitDecision.ACCEPT

    def test_custom_thresholds(self) -> None:
        policy = AdmitPolicy(duplicate_window_ms=1_000, out_of_order_threshold_ms=20_000)
        head = _battery(T)
        assert admit(_battery(T + 2_000), head, policy=policy).decision == AdmitDecision.ACCEPT
        assert admit(_battery(T - 15_000, voltage=1.0), head, policy=policy).decision == AdmitDecision.MERGE


class TestSimilarity:
    def test_values_within_tolerance(self) -> None:
        assert is_similar(_battery(soc=70.00005), _battery(soc=70.0), POLICY)

    def test_values_outside_tolerance(self) -> None:
        assert not is_similar(_battery(soc=70.001), _battery(soc=70.0), POLICY)

    def test_field_absent_on_one_side(self) -> None:
        assert not is_similar(_battery(), _battery(voltage=48.0), POLICY)

    def test_gps_within_tolerance(self) -> None:
        a = _battery(gps=GpsFix(lat=31.23040, lng=121.47370))
        b = _battery(gps=GpsFix(lat=31.23045, lng=121.47365))
        assert is_similar(a, b, POLICY)

    def test_gps_moved(self) -> None:
        a = _battery(gps=GpsFix(lat=31.2304, lng=121.4737))
        b = _battery(gps=GpsFix(lat=31.2314, lng=121.4737))
        assert not is_similar(a, b, POLICY)

    def test_gps_absent_on_one_side(self) -> None:
        assert not is_similar(_battery(gps=GpsFix(lat=31.2304, lng=121.4737)), _battery(), POLICY)

    def test_station_status_change(self) -> None:
        head = _station(status="charging", power=7.2)
        candidate = _station(T + 1_000, status="idle", power=7.2)
        assert admit(candidate, head, policy=POLICY).decision == AdmitDecision.ACCEPT

    def test_station_same_status(self) -> None:
        head = _station(status="charging", power=7.2)
        candidate = _station(T + 1_000, status="charging", power=7.2)
        assert admit(candidate, head, policy=POLICY).reason == DiscardReason.DUPLICATE


class TestFillMissing:
    def test_gps_merges_field_by_field(self) -> None:
        head = _battery(gps=GpsFix(lat=31.2304, lng=121.4737))
        candidate = _battery(T - 10, gps=GpsFix(lat=0.5, lng=0.5, speed=12.5))
        assert fill_missing(candidate, head) == {"gps": {"lat": 31.2304, "lng": 121.4737, "speed": 12.5}}

    def test_gps_added_to_head_without_position(self) -> None:
        head = _battery()
        candidate = _battery(T - 10, gps=GpsFix(lat=31.2304, lng=121.4737))
        assert fill_missing(candidate, head) == {"gps": {"lat": 31.2304, "lng": 121.4737}}

    def test_alerts_fill_an_empty_list(self) -> None:
        head = _battery()
        candidate = _battery(T - 10, alerts=["Low battery"])
        assert fill_missing(candidate, head) == {"alerts": ["Low battery"]}

    def test_nothing_missing(self) -> None:
        assert fill_missing(_battery(voltage=1.0), _battery(voltage=2.0)) == {}


class TestIdempotency:
    def test_fingerprint_format(self) -> None:
        reading = _battery(voltage=48.2, gps=GpsFix(lat=31.2304, lng=121.4737))
        assert idempotency_fingerprint(reading) == "70.00000:48.20000:null:31.23040:121.47370"
        assert idempotency_key(reading) == "idem:vehicle:PE-001:70.00000:48.20000:null:31.23040:121.47370"

    def test_station_key(self) -> None:
        key = idempotency_key(_station(power=7.2))
        assert key == "idem:chargenode:CN-1:charging:null:null:7.20000:null:null"

    def test_fingerprint_ignores_timestamp(self) -> None:
        assert idempotency_key(_battery(T)) == idempotency_key(_battery(T + 5_000))

    def test_ttl_rounds_up(self) -> None:
        assert POLICY.idempotency_ttl_seconds == 30
        assert AdmitPolicy(duplicate_window_ms=1_500).idempotency_ttl_seconds == 2

    def test_policy_from_config(self) -> None:
        config = FleetConfig(duplicate_window_ms=10_000, out_of_order_threshold_ms=2_000, max_clock_skew_ms=None)
        policy = AdmitPolicy.from_config(config)
        assert policy.duplicate_window_ms == 10_000
        assert policy.out_of_order_threshold_ms == 2_000
        assert policy.max_clock_skew_ms is None
