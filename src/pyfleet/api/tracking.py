"""GPS tracking route (``/api/tracking``) and per-device status."""

from __future__ import annotations

from aiohttp import web

from pyfleet import _constants as c
from pyfleet.api._common import BadRequestError, get_bridge, parse_kind, query_int

routes = web.RouteTableDef()


@routes.get("/api/tracking")
async def get_tracking(request: web.Request) -> web.Response:
    bridge = get_bridge(request)
    device = request.query.get("device", "").strip()
    if not device:
        raise BadRequestError("device is required")

    kind = request.query.get("type", "latest")
    if kind == "latest":
        points = await bridge.track(device, latest_only=True)
        point = points[0].model_dump(mode="json") if points else None
        return web.json_response({"point": point})
    if kind == "history":
        limit = query_int(request, "limit", c.TRACKING_HISTORY_LIMIT, maximum=c.TRACKING_HISTORY_LIMIT)
        points = await bridge.track(device, limit=limit)
        return web.json_response({"points": [p.model_dump(mode="json") for p in points], "count": len(points)})
    raise BadRequestError("type must be 'latest' or 'history'")


@routes.get("/api/status/{kind}/{device_id}")
async def get_status(request: web.Request) -> web.Response:
    kind = parse_kind(request.match_info["kind"])
    status = await get_bridge(request).status(kind, request.match_info["device_id"])
    return web.json_response(status.model_dump(mode="json", by_alias=True))
