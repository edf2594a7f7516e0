"""State/store layer.

This package is the single source of truth for how decoded readings are
admitted into, merged with and read back from per-device history, whether
they arrive over MQTT, HTTP or a retry delivery.
"""
