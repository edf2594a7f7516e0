"""Shared helpers for the HTTP route modules.

Internal to pyfleet and may change at any time.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from pyfleet.bridge import FleetBridge
from pyfleet.exceptions import DecodeError, StoreError
from pyfleet.ingestion.decode import parse_json_payload
from pyfleet.models import DeviceKind
from pyfleet.state.events import IngestOutcome, IngestResult

_logger = logging.getLogger(__name__)

BRIDGE_KEY = web.AppKey("bridge", FleetBridge)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


class BadRequestError(ValueError):
    """Invalid query parameter or request body."""


def get_bridge(request: web.Request) -> FleetBridge:
    return request.app[BRIDGE_KEY]


def query_int(request: web.Request, name: str, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    raw = request.query.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError:
            raise BadRequestError(f"{name} must be an integer") from None
    value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


def query_flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").strip().lower() in {"1", "true", "yes"}


def parse_kind(value: str) -> DeviceKind:
    try:
        return DeviceKind(value)
    except ValueError:
        raise BadRequestError(f"unknown device kind {value!r}") from None


async def read_json_object(request: web.Request) -> dict[str, Any]:
    body = await request.read()
    if not body:
        raise BadRequestError("request body is empty")
    return parse_json_payload(body, topic=f"http:{request.path}")


def require_text(data: dict[str, Any], *names: str) -> str:
    """First non-empty string among *names* in a request body."""
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise BadRequestError(f"{names[0]} is required")


_SKIPPED = {IngestOutcome.DUPLICATE, IngestOutcome.OUT_OF_ORDER, IngestOutcome.IDEMPOTENCY}


def ingest_response(result: IngestResult) -> web.Response:
    """Map a pipeline result onto an HTTP reply."""
    body: dict[str, Any] = {
        "ok": result.outcome != IngestOutcome.REJECTED,
        "outcome": str(result.outcome),
        "device": result.device_id,
        "ts": result.ts,
    }
    if result.outcome in _SKIPPED:
        body["skipped"] = True
        body["reason"] = str(result.outcome)
    if result.history_length is not None:
        body["count"] = result.history_length
    if result.detail:
        body["detail"] = result.detail

    status = 200
    if result.outcome == IngestOutcome.REJECTED:
        status = 400
    elif result.outcome == IngestOutcome.QUEUED:
        status = 202
    return web.json_response(body, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except (BadRequestError, DecodeError) as exc:
        return web.json_response({"ok": False, "error": str(exc)}, status=400)
    except StoreError as exc:
        _logger.warning("Store failure serving %s %s: %s", request.method, request.path, exc)
        return web.json_response({"ok": False, "error": "store_error"}, status=500)
