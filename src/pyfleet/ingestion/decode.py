"""Message decoder: ``(topic, payload bytes)`` → typed reading.

The decoder has no side effects. It raises :class:`~pyfleet.exceptions.DecodeError`
subclasses for anything it cannot turn into a valid reading; the pipeline is
responsible for logging and dropping those messages.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from pyfleet._constants import CHARGENODE_SEGMENT, DEFAULT_NAMESPACE, DIAGNOSTIC_ALERT
from pyfleet._redact import payload_preview
from pyfleet.exceptions import BadTopicError, MalformedPayloadError, MissingPrimaryFieldError
from pyfleet.ingestion.normalize import normalize_timestamp_ms
from pyfleet.ingestion.repair import repair_json_text
from pyfleet.models import READING_TYPES, BatteryReading, DeviceKind, Reading, StatusReport

_logger = logging.getLogger(__name__)

# Keys that carry identity on the wire; the topic (or route) is authoritative.
_IDENTITY_KEYS = ("device", "deviceId", "device_id", "stationId", "station_id")
_TIMESTAMP_KEYS = ("ts", "timestamp")


class MessageKind(StrEnum):
    BATTERY = "battery"
    STATUS = "status"
    CHARGENODE = "chargenode"


@dataclass(frozen=True)
class TopicRoute:
    """Where a topic points: message kind plus device id."""

    kind: MessageKind
    device_id: str

    @property
    def device_kind(self) -> DeviceKind:
        if self.kind == MessageKind.CHARGENODE:
            return DeviceKind.CHARGING_STATION
        return DeviceKind.VEHICLE


def parse_topic(topic: str, *, namespace: str = DEFAULT_NAMESPACE) -> TopicRoute:
    """Split ``<namespace>/<deviceId>/<kind>`` (or ``<namespace>/chargenode/<id>``)."""
    parts = topic.split("/")
    if len(parts) != 3:
        raise BadTopicError(f"Expected 3 topic segments, got {len(parts)}: {topic!r}", topic=topic)
    ns, middle, last = parts
    if ns != namespace:
        raise BadTopicError(f"Unknown topic namespace {ns!r} in {topic!r}", topic=topic)

    if middle == CHARGENODE_SEGMENT:
        if not last:
            raise BadTopicError(f"Missing station id in {topic!r}", topic=topic)
        return TopicRoute(kind=MessageKind.CHARGENODE, device_id=last)

    if not middle:
        raise BadTopicError(f"Missing device id in {topic!r}", topic=topic)
    try:
        kind = MessageKind(last)
    except ValueError:
        raise BadTopicError(f"Unknown message kind {last!r} in {topic!r}", topic=topic) from None
    if kind == MessageKind.CHARGENODE:
        raise BadTopicError(f"Unknown message kind {last!r} in {topic!r}", topic=topic)
    return TopicRoute(kind=kind, device_id=middle)


def parse_json_payload(payload: bytes | str, *, topic: str = "") -> dict[str, Any]:
    """Parse a JSON object, retrying once after the repair allow-list."""
    text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
    text = text.strip()
    preview = payload_preview(text)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        fixed = repair_json_text(text)
        if fixed is None:
            raise MalformedPayloadError("Payload is not JSON", topic=topic, preview=preview) from None
        _logger.debug("Strict JSON parse failed topic=%s, retrying repaired payload", topic)
        try:
            parsed = json.loads(fixed)
        except json.JSONDecodeError as exc:
            raise MalformedPayloadError(
                f"Payload is not JSON after repair: {exc.msg}",
                topic=topic,
                preview=preview,
            ) from None
        _logger.debug("JSON repair succeeded topic=%s", topic)

    if not isinstance(parsed, dict):
        raise MalformedPayloadError("Payload is not a JSON object", topic=topic, preview=preview)
    return parsed


def build_reading(
    kind: DeviceKind,
    device_id: str,
    data: Mapping[str, Any],
    *,
    received_at_ms: int,
    use_payload_timestamp: bool = True,
    topic: str = "",
) -> Reading:
    """Validate a parsed payload into the reading model for *kind*.

    The route's *device_id* always wins over ids inside the payload. The
    payload timestamp is used when valid (and allowed), otherwise
    *received_at_ms*.

    Raises
    ------
    MalformedPayloadError
        The payload does not validate.
    MissingPrimaryFieldError
        The reading has no primary field.
    """
    body = {k: v for k, v in data.items() if k not in _IDENTITY_KEYS and k not in _TIMESTAMP_KEYS}

    timestamp: int | None = None
    if use_payload_timestamp:
        for key in _TIMESTAMP_KEYS:
            timestamp = normalize_timestamp_ms(data.get(key))
            if timestamp is not None:
                break
    body["device_id"] = device_id
    body["timestamp"] = timestamp if timestamp is not None else received_at_ms

    model_cls = READING_TYPES[kind]
    try:
        reading = model_cls.model_validate(body)
    except ValidationError as exc:
        raise MalformedPayloadError(f"Invalid {kind} payload: {exc.error_count()} error(s)", topic=topic) from exc

    if not reading.has_primary_field():
        raise MissingPrimaryFieldError(
            f"{kind} reading for {device_id} has no {model_cls.PRIMARY_FIELD}",
            topic=topic,
        )
    return reading


def diagnostic_placeholder(device_id: str, received_at_ms: int) -> BatteryReading:
    """Empty battery reading carrying an advisory alert.

    Only produced in diagnostic mode. It has no ``soc`` and is therefore
    rejected before the store; it exists so the failure is visible in logs.
    """
    return BatteryReading(device_id=device_id, timestamp=received_at_ms, alerts=[DIAGNOSTIC_ALERT])


def decode_message(
    topic: str,
    payload: bytes | str,
    *,
    received_at_ms: int,
    namespace: str = DEFAULT_NAMESPACE,
    diagnostic: bool = False,
    station_bridge_timestamps: bool = True,
) -> Reading | StatusReport:
    """Decode one broker message.

    Returns a :class:`~pyfleet.models.BatteryReading`,
    :class:`~pyfleet.models.ChargingStationReading` or
    :class:`~pyfleet.models.StatusReport`.

    Raises
    ------
    BadTopicError
        The topic is not one of the fleet patterns.
    MalformedPayloadError
        The payload is not a (repairable) JSON object.
    MissingPrimaryFieldError
        The payload decodes but lacks ``soc`` / ``status``.
    """
    route = parse_topic(topic, namespace=namespace)

    if route.kind == MessageKind.STATUS:
        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else payload
        status = text.strip().lower()
        if not status:
            raise MalformedPayloadError("Empty status payload", topic=topic)
        return StatusReport(device_id=route.device_id, status=status, timestamp=received_at_ms)

    try:
        data = parse_json_payload(payload, topic=topic)
    except MalformedPayloadError:
        if diagnostic and route.kind == MessageKind.BATTERY:
            _logger.debug("Substituting diagnostic placeholder for %s", route.device_id)
            return diagnostic_placeholder(route.device_id, received_at_ms)
        raise

    use_payload_timestamp = not (route.kind == MessageKind.CHARGENODE and station_bridge_timestamps)
    return build_reading(
        route.device_kind,
        route.device_id,
        data,
        received_at_ms=received_at_ms,
        use_payload_timestamp=use_payload_timestamp,
        topic=topic,
    )
