"""pyfleet - Fleet telemetry bridge: MQTT ingestion, deduplication and staleness."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleet")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleet.bridge import FleetBridge
from pyfleet.config import FleetConfig
from pyfleet.exceptions import (
    BadTopicError,
    DecodeError,
    FleetConfigError,
    FleetError,
    MalformedPayloadError,
    MissingPrimaryFieldError,
    RetryExhaustedError,
    StoreError,
    StoreTimeoutError,
)
from pyfleet.models import (
    BatteryReading,
    ChargingStationReading,
    ChargingStationStatus,
    DeviceKind,
    DeviceState,
    DeviceStatus,
    GpsFix,
    Reading,
    StatusReport,
    TrackPoint,
)

__all__ = [
    "__version__",
    "BadTopicError",
    "BatteryReading",
    "ChargingStationReading",
    "ChargingStationStatus",
    "DecodeError",
    "DeviceKind",
    "DeviceState",
    "DeviceStatus",
    "FleetBridge",
    "FleetConfig",
    "FleetConfigError",
    "FleetError",
    "GpsFix",
    "MalformedPayloadError",
    "MissingPrimaryFieldError",
    "Reading",
    "RetryExhaustedError",
    "StatusReport",
    "StoreError",
    "StoreTimeoutError",
    "TrackPoint",
]
