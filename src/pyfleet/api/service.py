"""Bridge status route (``/api/mqtt-service``)."""

from __future__ import annotations

from aiohttp import web

from pyfleet.api._common import get_bridge

routes = web.RouteTableDef()


@routes.get("/api/mqtt-service")
async def get_service_status(request: web.Request) -> web.Response:
    return web.json_response({"success": True, "data": get_bridge(request).status_report()})
