"""Custom exception hierarchy for pyfleet."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all pyfleet errors."""


class FleetConfigError(FleetError):
    """Invalid or missing configuration."""


class DecodeError(FleetError):
    """An inbound message could not be turned into a reading.

    Always recovered inside the ingestion path: the message is logged and
    dropped, it never reaches the store or the retry queue.
    """

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class BadTopicError(DecodeError):
    """Topic does not match ``<namespace>/<deviceId>/<kind>``."""


class MalformedPayloadError(DecodeError):
    """Payload is not JSON, even after the best-effort repair pass."""

    def __init__(self, message: str, *, topic: str = "", preview: str = "") -> None:
        self.preview = preview
        super().__init__(message, topic=topic)


class MissingPrimaryFieldError(DecodeError):
    """Decoded reading lacks its primary field (``soc`` / ``status``)."""


class StoreError(FleetError):
    """Transient key-value store failure (network, HTTP error, bad reply)."""

    def __init__(self, message: str, *, command: str = "") -> None:
        self.command = command
        super().__init__(message)


class StoreTimeoutError(StoreError):
    """A store call did not finish within the configured timeout."""


class RetryExhaustedError(FleetError):
    """A queued reading ran out of delivery attempts and was dropped.

    Terminal: the reading is lost. Not raised into the ingestion path;
    instances are logged and handed to the retry queue's ``on_exhausted``
    callback.
    """

    def __init__(self, message: str, *, device_id: str = "", attempts: int = 0) -> None:
        self.device_id = device_id
        self.attempts = attempts
        super().__init__(message)
