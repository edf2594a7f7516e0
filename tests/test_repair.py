from __future__ import annotations

import json

from pyfleet.ingestion.repair import repair_json_text


def test_repairs_bare_keys_and_array_words() -> None:
    fixed = repair_json_text("{soc: 70, alerts: [Low battery]}")
    assert fixed is not None
    assert json.loads(fixed) == {"soc": 70, "alerts": ["Low battery"]}


def test_repairs_multi_element_arrays() -> None:
    fixed = repair_json_text('{"alerts": [Low battery, High temp, 3]}')
    assert fixed is not None
    assert json.loads(fixed) == {"alerts": ["Low battery", "High temp", 3]}


def test_repairs_bare_values_but_keeps_literals() -> None:
    fixed = repair_json_text('{"status": charging, "ok": true, "fault": null}')
    assert fixed is not None
    assert json.loads(fixed) == {"status": "charging", "ok": True, "fault": None}


def test_mixed_quoted_and_bare_array_elements() -> None:
    fixed = repair_json_text('{"alerts": ["Low battery", High temp]}')
    # Arrays that already contain quoted strings are outside the allow-list.
    assert fixed is None


def test_garbage_is_not_repaired() -> None:
    assert repair_json_text("{{{garbage") is None


def test_valid_json_is_unchanged() -> None:
    assert repair_json_text('{"soc": 70}') is None
