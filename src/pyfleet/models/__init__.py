"""Data models for fleet telemetry."""

from pyfleet.models._base import FleetBaseModel, ms_to_datetime
from pyfleet.models.battery import BatteryReading
from pyfleet.models.charging import ChargingStationReading, ChargingStationStatus
from pyfleet.models.gps import GpsFix, TrackPoint
from pyfleet.models.reading import DeviceKind, Reading, StatusReport
from pyfleet.models.status import DeviceState, DeviceStatus

READING_TYPES: dict[DeviceKind, type[Reading]] = {
    DeviceKind.VEHICLE: BatteryReading,
    DeviceKind.CHARGING_STATION: ChargingStationReading,
}

__all__ = [
    "BatteryReading",
    "ChargingStationReading",
    "ChargingStationStatus",
    "DeviceKind",
    "DeviceState",
    "DeviceStatus",
    "FleetBaseModel",
    "GpsFix",
    "READING_TYPES",
    "Reading",
    "StatusReport",
    "TrackPoint",
    "ms_to_datetime",
]
