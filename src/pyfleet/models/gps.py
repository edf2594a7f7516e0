"""GPS sub-record and tracking point models."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pyfleet.ingestion.normalize import lenient_number
from pyfleet.models._base import FleetBaseModel

_GPS_ALIASES: dict[str, tuple[str, ...]] = {
    "lat": ("lat", "latitude"),
    "lng": ("lng", "lon", "longitude"),
    "speed": ("speed",),
    "heading": ("heading", "course", "direction"),
    "altitude": ("altitude",),
    "accuracy": ("accuracy",),
}


class GpsFix(FleetBaseModel):
    """GPS position carried inside a vehicle reading.

    Numeric fields are ``None`` when the value is absent or unparseable.
    A fix is only kept on a reading when both coordinates are present.

    Parameters
    ----------
    lat, lng : float or None
        Coordinates in degrees.
    speed : float or None
        Ground speed as reported by the tracker.
    heading : float or None
        Course over ground in degrees.
    altitude : float or None
        Altitude in metres.
    accuracy : float or None
        Horizontal accuracy in metres.
    """

    lat: float | None = Field(default=None, validation_alias=AliasChoices(*_GPS_ALIASES["lat"]))
    lng: float | None = Field(default=None, validation_alias=AliasChoices(*_GPS_ALIASES["lng"]))
    speed: float | None = None
    heading: float | None = Field(default=None, validation_alias=AliasChoices(*_GPS_ALIASES["heading"]))
    altitude: float | None = None
    accuracy: float | None = None

    @field_validator("lat", "lng", "speed", "heading", "altitude", "accuracy", mode="before")
    @classmethod
    def _coerce_floats(cls, value: Any) -> float | None:
        return lenient_number(value)

    @property
    def has_position(self) -> bool:
        return self.lat is not None and self.lng is not None

    @classmethod
    def extract(cls, payload: Mapping[str, Any]) -> GpsFix | None:
        """Pull a GPS fix out of a battery payload.

        Accepts a nested ``gps`` object, a ``gps`` list (first element wins)
        or flat ``lat``/``lng`` style keys on the payload itself. Nested
        values take precedence over flat ones.
        """
        nested: Any = payload.get("gps")
        if isinstance(nested, GpsFix):
            return nested if nested.has_position else None
        if isinstance(nested, list):
            nested = nested[0] if nested else None
        if isinstance(nested, GpsFix):
            return nested if nested.has_position else None
        nested_map: Mapping[str, Any] = nested if isinstance(nested, Mapping) else {}

        candidate: dict[str, Any] = {}
        for field_name, aliases in _GPS_ALIASES.items():
            for source in (nested_map, payload):
                value = next((source[a] for a in aliases if source.get(a) is not None), None)
                if value is not None:
                    candidate[field_name] = value
                    break

        fix = cls.model_validate(candidate)
        return fix if fix.has_position else None


class TrackPoint(FleetBaseModel):
    """One point of a vehicle track, projected from stored history."""

    device: str
    ts: int
    lat: float
    lng: float
    speed: float | None = None
    heading: float | None = None
    altitude: float | None = None
