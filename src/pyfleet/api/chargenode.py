"""Charging station routes (``/api/chargenode``)."""

from __future__ import annotations

from typing import Any

from aiohttp import web

from pyfleet.api._common import get_bridge, ingest_response, query_int, read_json_object, require_text
from pyfleet.models import ChargingStationReading, DeviceKind, DeviceStatus, ms_to_datetime

routes = web.RouteTableDef()

_DEFAULT_LIMIT = 50


def _station_view(reading: ChargingStationReading, status: DeviceStatus) -> dict[str, Any]:
    """Stored record with the display status applied (stored data is untouched)."""
    record = reading.to_record()
    record["status"] = status.display_status
    record["isTimeout"] = status.timeout_flag
    last_update = ms_to_datetime(reading.ts)
    record["lastUpdate"] = last_update.isoformat() if last_update else None
    return record


@routes.get("/api/chargenode")
async def get_chargenode(request: web.Request) -> web.Response:
    bridge = get_bridge(request)
    station_id = request.query.get("stationId", "").strip()

    if not station_id:
        rows = await bridge.station_overview()
        stations = [_station_view(reading, status) for reading, status in rows]
        return web.json_response({"success": True, "data": stations, "count": len(stations)})

    bound = bridge.store.max_len(DeviceKind.CHARGING_STATION)
    limit = query_int(request, "limit", min(_DEFAULT_LIMIT, bound), maximum=bound)
    history = await bridge.history(DeviceKind.CHARGING_STATION, station_id, limit)
    status = await bridge.status(DeviceKind.CHARGING_STATION, station_id)

    latest = history[0] if history else None
    data: dict[str, Any] = {
        "stationId": station_id,
        "latest": _station_view(latest, status) if isinstance(latest, ChargingStationReading) else None,
        "history": [r.to_record() for r in history],
        "lastUpdate": status.last_update.isoformat() if status.last_update else None,
        "count": len(history),
        "isTimeout": status.timeout_flag,
    }
    return web.json_response({"success": True, "data": data})


@routes.post("/api/chargenode")
async def post_chargenode(request: web.Request) -> web.Response:
    data = await read_json_object(request)
    station_id = require_text(data, "stationId", "station_id", "deviceId", "device")
    result = await get_bridge(request).ingest(DeviceKind.CHARGING_STATION, station_id, data)
    return ingest_response(result)
