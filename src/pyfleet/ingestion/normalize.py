"""Normalization helpers.

Centralizes defensive parsing and placeholder handling. Device firmware
sends anything from real numbers to ``"--"``, ``NaN`` or ``true`` in numeric
slots; every such value becomes ``None`` here so downstream averages and
status displays never see a fake zero.
"""

from __future__ import annotations

import math
from typing import Any


def finite_number(value: Any) -> float | None:
    """Return *value* as a float when it is a finite JSON number, else ``None``.

    Strings are rejected on purpose: a quoted number in a numeric slot is a
    firmware bug, not a reading.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    result = float(value)
    if not math.isfinite(result):
        return None
    return result


def lenient_number(value: Any) -> float | None:
    """Like :func:`finite_number` but also parses numeric strings.

    Used for GPS sub-records, which some trackers publish as strings.
    """
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = float(text)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return finite_number(value)


def safe_int(value: Any) -> int | None:
    parsed = finite_number(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text if text else None


def string_list(value: Any) -> list[str]:
    """Coerce an alert-style list; anything that is not a list becomes ``[]``."""
    if not isinstance(value, list):
        return []
    items: list[str] = []
    for item in value:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            items.append(text)
    return items


def is_meaningful(value: Any) -> bool:
    """Return True if the value counts as "present" for merging.

    ``None``, empty strings, ``"--"``, empty lists and empty dicts are all
    treated as absent.
    """

    if value is None:
        return False
    if value == "":
        return False
    if value == "--":
        return False
    if value == {}:
        return False
    return bool(value != [])


def prune_patch(data: Any) -> Any:
    """Recursively drop non-meaningful values from a patch structure.

    - Dicts: remove keys with non-meaningful values; recurse into nested dicts/lists.
    - Lists: prune elements and drop non-meaningful items.
    - Scalars: returned as-is.
    """

    if isinstance(data, dict):
        pruned: dict[str, Any] = {}
        for key, value in data.items():
            cleaned = prune_patch(value)
            if is_meaningful(cleaned):
                pruned[key] = cleaned
        return pruned

    if isinstance(data, list):
        items: list[Any] = []
        for item in data:
            cleaned = prune_patch(item)
            if is_meaningful(cleaned):
                items.append(cleaned)
        return items

    return data


def normalize_timestamp_ms(value: Any) -> int | None:
    """Validate an epoch-milliseconds timestamp.

    - Missing / non-numeric -> None
    - <= 0 -> None
    - Fractional milliseconds are truncated; the value is never rescaled
    """

    ts = finite_number(value)
    if ts is None or ts <= 0:
        return None
    return int(ts)
