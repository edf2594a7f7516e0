"""Reading models shared by every device kind.

A reading is one decoded telemetry point for one device. Identity is the pair
``(kind, device_id)``: vehicles and charging stations live in separate key
namespaces so equal ids never collide.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar, Self

from pydantic import AliasChoices, Field, field_validator

from pyfleet.ingestion.normalize import is_meaningful, normalize_timestamp_ms, prune_patch
from pyfleet.models._base import FleetBaseModel


class DeviceKind(StrEnum):
    VEHICLE = "vehicle"
    CHARGING_STATION = "chargenode"


class Reading(FleetBaseModel):
    """Common shape of a stored telemetry point.

    Subclasses declare:

    * ``KIND``: the device namespace,
    * ``PRIMARY_FIELD``: the field without which a reading is invalid,
    * ``SIMILARITY_FIELDS``: fields compared by duplicate detection.
    """

    KIND: ClassVar[DeviceKind]
    PRIMARY_FIELD: ClassVar[str]
    SIMILARITY_FIELDS: ClassVar[tuple[str, ...]]
    IDENTITY_FIELDS: ClassVar[frozenset[str]] = frozenset({"device_id", "timestamp"})

    device_id: str
    timestamp: int = Field(validation_alias=AliasChoices("ts", "timestamp"), serialization_alias="ts")

    @field_validator("device_id", mode="before")
    @classmethod
    def _normalize_device_id(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ValueError("device id must be non-empty")
        return text

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_timestamp(cls, value: Any) -> int:
        ts = normalize_timestamp_ms(value)
        if ts is None:
            raise ValueError(f"invalid timestamp: {value!r}")
        return ts

    @property
    def kind(self) -> DeviceKind:
        return self.KIND

    @property
    def ts(self) -> int:
        return self.timestamp

    def has_primary_field(self) -> bool:
        return is_meaningful(getattr(self, self.PRIMARY_FIELD, None))

    def fields(self) -> dict[str, Any]:
        """Present (meaningful) measurement fields, keyed by field name."""
        dumped = self.model_dump(exclude=set(self.IDENTITY_FIELDS))
        return prune_patch(dumped)

    def with_patch(self, patch: dict[str, Any]) -> Self:
        """Return a validated copy with *patch* applied on top of this reading."""
        if not patch:
            return self
        data = self.model_dump()
        data.update(patch)
        return type(self).model_validate(data)

    def to_record(self) -> dict[str, Any]:
        """camelCase dict as persisted in the store (absent fields omitted)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class StatusReport(FleetBaseModel):
    """Plain-text presence message from ``<namespace>/<deviceId>/status``.

    Logged by the pipeline; never stored.
    """

    device_id: str
    status: str
    timestamp: int
