"""Vehicle telemetry routes (``/api/telemetry``)."""

from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from pyfleet.api._common import (
    BadRequestError,
    get_bridge,
    ingest_response,
    query_flag,
    query_int,
    read_json_object,
    require_text,
)
from pyfleet.exceptions import StoreError
from pyfleet.models import DeviceKind

_logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


@routes.get("/api/telemetry")
async def get_telemetry(request: web.Request) -> web.Response:
    bridge = get_bridge(request)

    if query_flag(request, "list"):
        devices = await bridge.devices(DeviceKind.VEHICLE)
        return web.json_response({"devices": devices, "count": len(devices)})

    device = request.query.get("device", "").strip()
    if not device:
        raise BadRequestError("device is required")

    if query_flag(request, "latest"):
        return web.json_response(await _latest_payload(request, device))

    bound = bridge.store.max_len(DeviceKind.VEHICLE)
    limit = query_int(request, "limit", bound, maximum=bound)
    readings = await bridge.history(DeviceKind.VEHICLE, device, limit)
    return web.json_response({"device": device, "count": len(readings), "data": [r.to_record() for r in readings]})


async def _latest_payload(request: web.Request, device: str) -> dict[str, Any]:
    bridge = get_bridge(request)
    reading = await bridge.latest(DeviceKind.VEHICLE, device)
    status = await bridge.status(DeviceKind.VEHICLE, device)
    status_body = status.model_dump(mode="json", by_alias=True)
    if reading is None:
        return {"device": device, "latest": None, "gpsFromCache": False, "status": status_body}

    record = reading.to_record()
    from_cache = False
    if "gps" not in record:
        try:
            cached = await bridge.last_known_gps(device)
        except StoreError as exc:
            _logger.warning("GPS cache lookup failed for %s: %s", device, exc)
            cached = None
        if cached is not None:
            record["gps"] = cached.model_dump(mode="json", exclude_none=True)
            from_cache = True
    return {
        "device": device,
        "latest": record,
        "gpsFromCache": from_cache,
        "status": status_body,
    }


@routes.post("/api/telemetry")
async def post_telemetry(request: web.Request) -> web.Response:
    data = await read_json_object(request)
    device = require_text(data, "device", "deviceId", "device_id")
    result = await get_bridge(request).ingest(DeviceKind.VEHICLE, device, data)
    return ingest_response(result)
