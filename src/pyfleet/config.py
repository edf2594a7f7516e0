"""Service configuration for pyfleet."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable, Mapping
from typing import Any

from pyfleet import _constants as c
from pyfleet.exceptions import FleetConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _first_env(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = env.get(name)
        if value:
            return value
    return None


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Bridge configuration.

    Parameters
    ----------
    mqtt_url : str
        Broker URL. ``mqtt://``, ``mqtts://`` (TLS), ``ws://`` and ``wss://``
        are understood.
    mqtt_username, mqtt_password : str
        Broker credentials; empty means anonymous.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_shared_group : str or None
        When set, every subscription is prefixed with ``$share/<group>/`` so
        several bridge processes split the message stream.
    mqtt_enabled : bool
        Start the broker runtime with the bridge.
    namespace : str
        First topic segment (``fleet`` in ``fleet/PE-001/battery``).
    redis_rest_url, redis_rest_token : str or None
        Upstash REST endpoint and token. Without a URL the bridge keeps
        history in process memory.
    max_history : int
        Per-vehicle history bound.
    station_max_history : int
        Per-charging-station history bound.
    station_ttl_seconds : int
        Retention TTL for charging-station history. ``<= 0`` disables expiry.
    gps_cache_ttl_seconds : int
        TTL of the last-known GPS cache entry.
    duplicate_window_ms : int
        Window in which a near-identical reading counts as a duplicate. Also
        the lifetime of the idempotency marker.
    out_of_order_threshold_ms : int
        How far behind the head a reading may be and still merge into it.
    max_clock_skew_ms : int or None
        Readings stamped further than this into the future are discarded.
        ``None`` disables the guard.
    value_tolerance : float
        Absolute tolerance for comparing primary numeric fields.
    gps_tolerance_deg : float
        Per-axis tolerance for comparing GPS positions.
    stale_threshold_ms : int
        Age after which a device is reported as timed out.
    store_timeout : float
        Seconds allowed for a single store write.
    retry_interval : float
        Seconds between retry queue drains.
    retry_capacity : int
        Retry queue bound; the oldest item is evicted when full.
    retry_max_attempts : int
        Delivery attempts per queued reading before it is dropped.
    diagnostic_mode : bool
        Decode unrepairable battery payloads into a placeholder reading
        carrying an advisory alert (it is still rejected, but visible in logs).
    station_bridge_timestamps : bool
        Stamp charging-station readings with the bridge receive time instead
        of the payload ``ts``.
    http_host, http_port : str, int
        Bind address of the HTTP surface.
    """

    mqtt_url: str = c.DEFAULT_MQTT_URL
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_keepalive: int = 60
    mqtt_shared_group: str | None = None
    mqtt_enabled: bool = True
    namespace: str = c.DEFAULT_NAMESPACE
    redis_rest_url: str | None = None
    redis_rest_token: str | None = None
    max_history: int = c.MAX_HISTORY
    station_max_history: int = c.MAX_HISTORY
    station_ttl_seconds: int = c.STATION_TTL_SECONDS
    gps_cache_ttl_seconds: int = c.GPS_CACHE_TTL_SECONDS
    duplicate_window_ms: int = c.DUPLICATE_WINDOW_MS
    out_of_order_threshold_ms: int = c.OUT_OF_ORDER_THRESHOLD_MS
    max_clock_skew_ms: int | None = c.MAX_CLOCK_SKEW_MS
    value_tolerance: float = c.VALUE_TOLERANCE
    gps_tolerance_deg: float = c.GPS_TOLERANCE_DEG
    stale_threshold_ms: int = c.STALE_THRESHOLD_MS
    store_timeout: float = c.STORE_TIMEOUT_SECONDS
    retry_interval: float = c.RETRY_INTERVAL_SECONDS
    retry_capacity: int = c.RETRY_CAPACITY
    retry_max_attempts: int = c.RETRY_MAX_ATTEMPTS
    diagnostic_mode: bool = False
    station_bridge_timestamps: bool = True
    http_host: str = "0.0.0.0"
    http_port: int = 3000

    def __post_init__(self) -> None:
        positive = {
            "max_history": self.max_history,
            "station_max_history": self.station_max_history,
            "duplicate_window_ms": self.duplicate_window_ms,
            "stale_threshold_ms": self.stale_threshold_ms,
            "store_timeout": self.store_timeout,
            "retry_interval": self.retry_interval,
            "retry_capacity": self.retry_capacity,
            "retry_max_attempts": self.retry_max_attempts,
        }
        for name, value in positive.items():
            if value <= 0:
                raise FleetConfigError(f"{name} must be positive, got {value!r}")
        if self.out_of_order_threshold_ms < 0:
            raise FleetConfigError(
                f"out_of_order_threshold_ms must not be negative, got {self.out_of_order_threshold_ms!r}"
            )
        if not self.namespace or "/" in self.namespace:
            raise FleetConfigError(f"namespace must be a single topic segment, got {self.namespace!r}")

    @property
    def uses_redis(self) -> bool:
        """Whether history goes to the Upstash REST store."""
        return bool(self.redis_rest_url)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, **overrides: Any) -> FleetConfig:
        """Create configuration from environment variables.

        Reads ``FLEET_*`` variables and the names the dashboard deployment
        already uses (``MQTT_URL``, ``UPSTASH_REDIS_REST_URL``,
        ``CHARGENODE_MAX_HISTORY``, ``PORT``...). Explicit keyword arguments
        override environment values.

        Parameters
        ----------
        env
            Mapping to read instead of :data:`os.environ`.
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        FleetConfig
            Populated configuration.
        """
        env = os.environ if env is None else env
        config_kwargs: dict[str, Any] = {}

        _ENV_STR_MAP: dict[str, tuple[str, ...]] = {
            "mqtt_url": ("FLEET_MQTT_URL", "MQTT_URL"),
            "mqtt_username": ("FLEET_MQTT_USERNAME", "MQTT_USERNAME"),
            "mqtt_password": ("FLEET_MQTT_PASSWORD", "MQTT_PASSWORD"),
            "mqtt_shared_group": ("MQTT_SHARED_GROUP",),
            "namespace": ("FLEET_NAMESPACE",),
            "redis_rest_url": ("UPSTASH_REDIS_REST_URL",),
            "redis_rest_token": ("UPSTASH_REDIS_REST_TOKEN",),
            "http_host": ("FLEET_HTTP_HOST",),
        }
        for field_name, names in _ENV_STR_MAP.items():
            val = _first_env(env, *names)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_NUMERIC_MAP: dict[str, tuple[tuple[str, ...], Callable[[str], Any]]] = {
            "mqtt_keepalive": (("FLEET_MQTT_KEEPALIVE",), int),
            "max_history": (("FLEET_MAX_HISTORY",), int),
            "station_max_history": (("CHARGENODE_MAX_HISTORY",), int),
            "station_ttl_seconds": (("CHARGENODE_TTL_SECONDS",), int),
            "duplicate_window_ms": (("FLEET_DUPLICATE_WINDOW_MS",), int),
            "out_of_order_threshold_ms": (("FLEET_OUT_OF_ORDER_THRESHOLD_MS",), int),
            "max_clock_skew_ms": (("FLEET_MAX_CLOCK_SKEW_MS",), int),
            "stale_threshold_ms": (("FLEET_STALE_THRESHOLD_MS",), int),
            "store_timeout": (("FLEET_STORE_TIMEOUT",), float),
            "retry_interval": (("FLEET_RETRY_INTERVAL",), float),
            "retry_capacity": (("FLEET_RETRY_CAPACITY",), int),
            "retry_max_attempts": (("FLEET_RETRY_MAX_ATTEMPTS",), int),
            "http_port": (("FLEET_HTTP_PORT", "PORT"), int),
        }
        for field_name, (names, parse) in _ENV_NUMERIC_MAP.items():
            if field_name in overrides:
                continue
            val = _first_env(env, *names)
            if val is None:
                continue
            try:
                config_kwargs[field_name] = parse(val)
            except ValueError as exc:
                raise FleetConfigError(f"{names[0]} is not a valid number: {val!r}") from exc

        if "mqtt_enabled" not in overrides:
            config_kwargs["mqtt_enabled"] = _env_bool(env.get("FLEET_MQTT_ENABLED"), True)

        if "diagnostic_mode" not in overrides:
            development = env.get("NODE_ENV", "").strip().lower() == "development"
            config_kwargs["diagnostic_mode"] = _env_bool(env.get("FLEET_DIAGNOSTIC"), development)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
