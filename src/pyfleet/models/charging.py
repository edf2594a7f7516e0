"""Charging station reading model.

Mapped from ``<namespace>/chargenode/<stationId>`` messages.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar

from pydantic import AliasChoices, Field, field_validator

from pyfleet.ingestion.normalize import finite_number, safe_str
from pyfleet.models.reading import DeviceKind, Reading


class ChargingStationStatus(StrEnum):
    """Status values stations are known to report.

    The ``status`` field itself stays a free-form string; unknown values are
    stored as reported.
    """

    CHARGING = "charging"
    IDLE = "idle"
    OCCUPIED = "occupied"
    FAULT = "fault"
    OFFLINE = "offline"


class ChargingStationReading(Reading):
    """Charging station telemetry.

    ``status`` is the primary field. Electrical values are in V, A, kW and
    kWh; ``remaining_time`` is in minutes.
    """

    KIND: ClassVar[DeviceKind] = DeviceKind.CHARGING_STATION
    PRIMARY_FIELD: ClassVar[str] = "status"
    SIMILARITY_FIELDS: ClassVar[tuple[str, ...]] = ("status", "voltage", "current", "power")

    device_id: str = Field(
        validation_alias=AliasChoices("stationId", "station_id", "device", "deviceId", "device_id"),
        serialization_alias="stationId",
    )
    status: str | None = None
    voltage: float | None = None
    current: float | None = None
    power: float | None = None
    energy: float | None = None
    remaining_time: float | None = None
    temperature: float | None = None
    connector_type: str | None = None
    max_power: float | None = None
    location: str | None = None
    fault_code: str | None = None
    fault_message: str | None = None

    @field_validator(
        "voltage",
        "current",
        "power",
        "energy",
        "remaining_time",
        "temperature",
        "max_power",
        mode="before",
    )
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return finite_number(value)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> str | None:
        text = safe_str(value)
        return text.lower() if text is not None else None

    @field_validator("connector_type", "location", "fault_code", "fault_message", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def is_active(self) -> bool:
        """Whether the station last reported an in-use status."""
        return self.status in (ChargingStationStatus.CHARGING, ChargingStationStatus.OCCUPIED)
