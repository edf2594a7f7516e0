"""Derived device status model (computed on read, never stored)."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pyfleet.models._base import FleetBaseModel
from pyfleet.models.reading import DeviceKind


class DeviceState(StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"
    TIMEOUT = "timeout"


class DeviceStatus(FleetBaseModel):
    """Presence classification of one device at one instant.

    ``display_status`` is what dashboards show: a vehicle shows its
    ``state``; a charging station shows its last reported ``status`` while
    fresh and ``"offline"`` once timed out. The stored reading is untouched.
    """

    device_id: str
    kind: DeviceKind
    state: DeviceState
    online: bool
    timeout_flag: bool
    display_status: str
    last_update: datetime | None = None
    age_ms: int | None = None
