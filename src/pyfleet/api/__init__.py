"""HTTP surface of the bridge (``aiohttp.web``)."""

from __future__ import annotations

from aiohttp import web

from pyfleet.api import chargenode, service, telemetry, tracking
from pyfleet.api._common import BRIDGE_KEY, error_middleware
from pyfleet.bridge import FleetBridge


def build_app(bridge: FleetBridge) -> web.Application:
    """Application exposing ingestion and read routes for *bridge*.

    The bridge lifecycle is owned by the caller.
    """
    app = web.Application(middlewares=[error_middleware])
    app[BRIDGE_KEY] = bridge
    app.add_routes(telemetry.routes)
    app.add_routes(chargenode.routes)
    app.add_routes(tracking.routes)
    app.add_routes(service.routes)
    return app


__all__ = ["BRIDGE_KEY", "build_app"]
