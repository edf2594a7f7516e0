"""Vehicle battery reading model."""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import AliasChoices, Field, field_validator, model_validator

from pyfleet.ingestion.normalize import finite_number, safe_int, safe_str, string_list
from pyfleet.models.gps import GpsFix
from pyfleet.models.reading import DeviceKind, Reading


class BatteryReading(Reading):
    """Battery telemetry published on ``<namespace>/<deviceId>/battery``.

    Every measurement is optional; a reading without ``soc`` is invalid and
    is rejected before it reaches the store.
    """

    KIND: ClassVar[DeviceKind] = DeviceKind.VEHICLE
    PRIMARY_FIELD: ClassVar[str] = "soc"
    SIMILARITY_FIELDS: ClassVar[tuple[str, ...]] = ("soc", "voltage", "temperature")

    device_id: str = Field(
        validation_alias=AliasChoices("device", "deviceId", "device_id"),
        serialization_alias="device",
    )
    soc: float | None = None
    """State of charge (0-100 percent)."""
    voltage: float | None = None
    """Pack voltage in volts."""
    temperature: float | None = None
    """Pack temperature in °C."""
    health: float | None = None
    """State of health (0-100 percent)."""
    cycle_count: int | None = None
    estimated_range_km: float | None = None
    charging_status: str | None = None
    alerts: list[str] = Field(default_factory=list)
    gps: GpsFix | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_gps(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        merged = dict(values)
        merged["gps"] = GpsFix.extract(values)
        return merged

    @field_validator("soc", "voltage", "temperature", "health", "estimated_range_km", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return finite_number(value)

    @field_validator("cycle_count", mode="before")
    @classmethod
    def _coerce_cycle_count(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("charging_status", mode="before")
    @classmethod
    def _coerce_charging_status(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("alerts", mode="before")
    @classmethod
    def _coerce_alerts(cls, value: Any) -> list[str]:
        return string_list(value)

    @property
    def has_gps(self) -> bool:
        return self.gps is not None and self.gps.has_position
