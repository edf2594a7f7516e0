"""Command line entry point: ``python -m pyfleet``.

Runs the bridge (broker subscription, retry timer) together with the HTTP
surface until interrupted. Configuration comes from the environment; the
flags below override it.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any

from aiohttp import web

from pyfleet import __version__
from pyfleet._redact import redact_for_log
from pyfleet.api import build_app
from pyfleet.bridge import FleetBridge
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetError

_LOG = logging.getLogger("pyfleet")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pyfleet", description="Fleet telemetry bridge")
    parser.add_argument("--host", help="HTTP bind address (default: FLEET_HTTP_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="HTTP port (default: FLEET_HTTP_PORT / PORT or 3000)")
    parser.add_argument("--no-mqtt", action="store_true", help="Do not subscribe to the broker (HTTP ingestion only)")
    parser.add_argument("--memory-store", action="store_true", help="Keep history in process memory even if Redis is configured")
    parser.add_argument("--diagnostic", action="store_true", help="Log unrepairable battery payloads as placeholder readings")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Shortcut for --log-level DEBUG")
    parser.add_argument("--print-config", action="store_true", help="Print the effective (redacted) configuration and exit")
    parser.add_argument("--version", action="version", version=f"pyfleet {__version__}")
    return parser.parse_args(argv)


def _config_from_args(args: argparse.Namespace) -> FleetConfig:
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["http_host"] = args.host
    if args.port is not None:
        overrides["http_port"] = args.port
    if args.no_mqtt:
        overrides["mqtt_enabled"] = False
    if args.memory_store:
        overrides["redis_rest_url"] = None
        overrides["redis_rest_token"] = None
    if args.diagnostic:
        overrides["diagnostic_mode"] = True
    return FleetConfig.from_env(**overrides)


async def _serve(config: FleetConfig) -> None:
    async with FleetBridge(config) as bridge:
        runner = web.AppRunner(build_app(bridge))
        await runner.setup()
        site = web.TCPSite(runner, config.http_host, config.http_port)
        await site.start()
        _LOG.info("HTTP surface listening on %s:%d", config.http_host, config.http_port)

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signum, stop.set)
        try:
            await stop.wait()
        finally:
            _LOG.info("Shutting down")
            await runner.cleanup()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    level = logging.DEBUG if args.verbose else getattr(logging, args.log_level)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = _config_from_args(args)
    except FleetError as exc:
        print(f"[pyfleet] Invalid configuration: {exc}", file=sys.stderr)
        return 2

    if args.print_config:
        print(json.dumps(redact_for_log(dataclasses.asdict(config)), indent=2, sort_keys=True))
        return 0

    try:
        asyncio.run(_serve(config))
    except FleetError as exc:
        print(f"[pyfleet] Bridge failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
