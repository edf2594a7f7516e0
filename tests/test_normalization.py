from __future__ import annotations

import math

from pyfleet.ingestion.normalize import (
    finite_number,
    is_meaningful,
    lenient_number,
    normalize_timestamp_ms,
    prune_patch,
    safe_int,
    safe_str,
    string_list,
)


def test_finite_number_accepts_ints_and_floats() -> None:
    assert finite_number(70) == 70.0
    assert finite_number(12.5) == 12.5
    assert finite_number(0) == 0.0


def test_finite_number_rejects_non_numbers() -> None:
    assert finite_number("70") is None
    assert finite_number(None) is None
    assert finite_number(True) is None
    assert finite_number(math.nan) is None
    assert finite_number(math.inf) is None
    assert finite_number([70]) is None


def test_lenient_number_parses_numeric_strings() -> None:
    assert lenient_number("31.2304") == 31.2304
    assert lenient_number(" 121.47 ") == 121.47
    assert lenient_number("") is None
    assert lenient_number("north") is None
    assert lenient_number("NaN") is None
    assert lenient_number(False) is None


def test_safe_int_truncates_and_rejects_junk() -> None:
    assert safe_int(412.9) == 412
    assert safe_int("412") is None


def test_safe_str_strips_and_drops_empty() -> None:
    assert safe_str("  charging ") == "charging"
    assert safe_str("   ") is None
    assert safe_str(3) is None


def test_string_list_coerces_items() -> None:
    assert string_list(["Low battery", " ", None, 5]) == ["Low battery", "5"]
    assert string_list("Low battery") == []


def test_is_meaningful_placeholders() -> None:
    assert not is_meaningful(None)
    assert not is_meaningful("")
    assert not is_meaningful("--")
    assert not is_meaningful([])
    assert not is_meaningful({})
    assert is_meaningful(0)
    assert is_meaningful(0.0)
    assert is_meaningful(False)


def test_prune_patch_recurses() -> None:
    patch = {
        "soc": 70.0,
        "voltage": None,
        "alerts": [],
        "gps": {"lat": 31.2, "lng": 121.4, "speed": None},
    }
    assert prune_patch(patch) == {"soc": 70.0, "gps": {"lat": 31.2, "lng": 121.4}}


def test_normalize_timestamp_ms_never_rescales() -> None:
    assert normalize_timestamp_ms(1000) == 1000
    assert normalize_timestamp_ms(1_700_000_000) == 1_700_000_000
    assert normalize_timestamp_ms(1_700_000_000_123) == 1_700_000_000_123
    assert normalize_timestamp_ms(normalize_timestamp_ms(999)) == 999


def test_normalize_timestamp_ms_invalid_values() -> None:
    assert normalize_timestamp_ms(None) is None
    assert normalize_timestamp_ms(0) is None
    assert normalize_timestamp_ms(-5) is None
    assert normalize_timestamp_ms("1700000000") is None
