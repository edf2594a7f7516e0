"""Deduplication and ordering policy.

Pure functions: no I/O, no payload parsing. The decoder hands over validated
readings; this module decides whether a candidate reading is new, fills gaps
in the stored head, or is noise.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Any

from pyfleet import _constants as c
from pyfleet.config import FleetConfig
from pyfleet.models import GpsFix, Reading
from pyfleet.state.events import AdmitResult, DiscardReason


@dataclasses.dataclass(frozen=True)
class AdmitPolicy:
    """Thresholds used by :func:`admit`.

    Parameters
    ----------
    duplicate_window_ms : int
        A newer reading similar to the head within this window is a duplicate.
    out_of_order_threshold_ms : int
        An older reading further than this behind the head is discarded
        instead of merged.
    max_clock_skew_ms : int or None
        A reading stamped further than this ahead of ``now_ms`` is discarded.
        ``None`` or a non-positive value disables the guard.
    tolerance : float
        Absolute tolerance for numeric similarity fields.
    gps_tolerance_deg : float
        Per-axis tolerance for GPS coordinates.
    """

    duplicate_window_ms: int = c.DUPLICATE_WINDOW_MS
    out_of_order_threshold_ms: int = c.OUT_OF_ORDER_THRESHOLD_MS
    max_clock_skew_ms: int | None = c.MAX_CLOCK_SKEW_MS
    tolerance: float = c.VALUE_TOLERANCE
    gps_tolerance_deg: float = c.GPS_TOLERANCE_DEG

    @classmethod
    def from_config(cls, config: FleetConfig) -> AdmitPolicy:
        return cls(
            duplicate_window_ms=config.duplicate_window_ms,
            out_of_order_threshold_ms=config.out_of_order_threshold_ms,
            max_clock_skew_ms=config.max_clock_skew_ms,
            tolerance=config.value_tolerance,
            gps_tolerance_deg=config.gps_tolerance_deg,
        )

    @property
    def idempotency_ttl_seconds(self) -> int:
        """Marker lifetime: the duplicate window rounded up to whole seconds."""
        return max(1, math.ceil(self.duplicate_window_ms / 1000))


def fill_missing(candidate: Reading, head: Reading) -> dict[str, Any]:
    """Fields present in *candidate* but absent in *head*.

    GPS merges field by field: a candidate may contribute ``speed`` to a head
    that already has coordinates. Populated head fields are never overwritten.
    """
    head_fields = head.fields()
    patch: dict[str, Any] = {}
    for key, value in candidate.fields().items():
        if key == "gps" and isinstance(value, dict):
            head_gps: dict[str, Any] = head_fields.get("gps") or {}
            additions = {k: v for k, v in value.items() if k not in head_gps}
            if additions:
                patch["gps"] = {**head_gps, **additions}
            continue
        if key not in head_fields:
            patch[key] = value
    return patch


def _values_close(a: Any, b: Any, tolerance: float) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(a - b) < tolerance
    return bool(a == b)


def _position(reading: Reading) -> GpsFix | None:
    gps = getattr(reading, "gps", None)
    if isinstance(gps, GpsFix) and gps.has_position:
        return gps
    return None


def _gps_close(candidate: Reading, head: Reading, tolerance_deg: float) -> bool:
    a = _position(candidate)
    b = _position(head)
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return _values_close(a.lat, b.lat, tolerance_deg) and _values_close(a.lng, b.lng, tolerance_deg)


def is_similar(candidate: Reading, head: Reading, policy: AdmitPolicy) -> bool:
    """Whether every similarity field (and the GPS position) matches the head."""
    for name in candidate.SIMILARITY_FIELDS:
        if not _values_close(getattr(candidate, name, None), getattr(head, name, None), policy.tolerance):
            return False
    return _gps_close(candidate, head, policy.gps_tolerance_deg)


def admit(
    candidate: Reading,
    head: Reading | None,
    *,
    policy: AdmitPolicy,
    now_ms: int | None = None,
) -> AdmitResult:
    """Decide what to do with *candidate* given the stored *head*.

    Rules, first match wins:

    1. no head: accept;
    2. candidate not newer than head: discard as out of order when it is
       more than ``out_of_order_threshold_ms`` behind, otherwise merge the
       fields the head lacks, otherwise discard as duplicate;
    3. candidate too far in the future (``now_ms`` given): out of order;
    4. similar to head within ``duplicate_window_ms``: duplicate;
    5. otherwise accept.
    """
    if head is None:
        return AdmitResult.accept()

    if candidate.ts <= head.ts:
        if head.ts - candidate.ts > policy.out_of_order_threshold_ms:
            return AdmitResult.discard(DiscardReason.OUT_OF_ORDER)
        patch = fill_missing(candidate, head)
        if patch:
            return AdmitResult.merge(patch)
        return AdmitResult.discard(DiscardReason.DUPLICATE)

    skew = policy.max_clock_skew_ms
    if now_ms is not None and skew is not None and skew > 0 and candidate.ts - now_ms > skew:
        return AdmitResult.discard(DiscardReason.OUT_OF_ORDER)

    if candidate.ts - head.ts < policy.duplicate_window_ms and is_similar(candidate, head, policy):
        return AdmitResult.discard(DiscardReason.DUPLICATE)

    return AdmitResult.accept()


def _fmt(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return f"{value:.5f}"
    return str(value)


def idempotency_fingerprint(reading: Reading) -> str:
    """Stable digest-free fingerprint of the similarity fields and position."""
    parts = [_fmt(getattr(reading, name, None)) for name in reading.SIMILARITY_FIELDS]
    gps = _position(reading)
    parts.append(_fmt(gps.lat if gps else None))
    parts.append(_fmt(gps.lng if gps else None))
    return ":".join(parts)


def idempotency_key(reading: Reading) -> str:
    return f"idem:{reading.kind}:{reading.device_id}:{idempotency_fingerprint(reading)}"
