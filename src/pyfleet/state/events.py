"""Admission decisions and ingestion outcomes.

Every path into the store (broker messages, HTTP bodies, retry deliveries)
reports what happened with one of these records.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pyfleet.models import DeviceKind


class AdmitDecision(StrEnum):
    ACCEPT = "accept"
    MERGE = "merge"
    DISCARD = "discard"


class DiscardReason(StrEnum):
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    IDEMPOTENCY = "idempotency"


class AdmitResult(BaseModel):
    """Outcome of comparing a candidate reading with the stored head."""

    model_config = ConfigDict(frozen=True)

    decision: AdmitDecision
    reason: DiscardReason | None = None
    patch: dict[str, Any] = Field(default_factory=dict, description="Fill-missing patch for MERGE")

    @classmethod
    def accept(cls) -> AdmitResult:
        return cls(decision=AdmitDecision.ACCEPT)

    @classmethod
    def merge(cls, patch: dict[str, Any]) -> AdmitResult:
        return cls(decision=AdmitDecision.MERGE, patch=patch)

    @classmethod
    def discard(cls, reason: DiscardReason) -> AdmitResult:
        return cls(decision=AdmitDecision.DISCARD, reason=reason)


class IngestOutcome(StrEnum):
    STORED = "stored"
    MERGED = "merged"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    IDEMPOTENCY = "idempotency"
    REJECTED = "rejected"
    QUEUED = "queued"
    STATUS = "status"


_DISCARD_OUTCOMES: dict[DiscardReason, IngestOutcome] = {
    DiscardReason.DUPLICATE: IngestOutcome.DUPLICATE,
    DiscardReason.OUT_OF_ORDER: IngestOutcome.OUT_OF_ORDER,
    DiscardReason.IDEMPOTENCY: IngestOutcome.IDEMPOTENCY,
}


class IngestResult(BaseModel):
    """What the pipeline did with one inbound message."""

    model_config = ConfigDict(frozen=True)

    outcome: IngestOutcome
    kind: DeviceKind | None = None
    device_id: str | None = None
    ts: int | None = None
    history_length: int | None = None
    detail: str | None = None

    @property
    def persisted(self) -> bool:
        """Whether the reading is now reflected in the store."""
        return self.outcome in (IngestOutcome.STORED, IngestOutcome.MERGED)

    @staticmethod
    def outcome_for(reason: DiscardReason) -> IngestOutcome:
        return _DISCARD_OUTCOMES[reason]
