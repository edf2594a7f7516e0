from __future__ import annotations

from pyfleet._redact import payload_preview, redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "mqtt_url": "mqtt://broker.example.com:1883",
        "mqtt_password": "pw",
        "redis_rest_token": "tok",
        "nested": {"Authorization": "Bearer abc"},
        "mqtt_username": "bridge",
    }

    redacted = redact_for_log(payload)
    assert redacted["mqtt_password"] == "<redacted>"
    assert redacted["redis_rest_token"] == "<redacted>"
    assert redacted["nested"]["Authorization"] == "<redacted>"
    assert redacted["mqtt_username"] == "bridge"
    assert redacted["mqtt_url"] == "mqtt://broker.example.com:1883"


def test_redact_for_log_keeps_empty_secrets_visible() -> None:
    redacted = redact_for_log({"mqtt_password": "", "redis_rest_token": None})
    assert redacted == {"mqtt_password": "", "redis_rest_token": None}


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_payload_preview_truncates_to_limit() -> None:
    preview = payload_preview(b"  " + b"a" * 150)
    assert preview == "a" * 100 + "…"


def test_payload_preview_short_payload_unchanged() -> None:
    assert payload_preview('{"soc": 70}') == '{"soc": 70}'
