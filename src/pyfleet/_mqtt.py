"""Internal MQTT broker URL parsing and runtime helpers."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt

from pyfleet._constants import CHARGENODE_SEGMENT
from pyfleet.config import FleetConfig
from pyfleet.exceptions import FleetConfigError

MessageCallback = Callable[[str, bytes, int], None]

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883, "ws": 80, "wss": 443}


@dataclass(frozen=True)
class BrokerAddress:
    """Connection details parsed from a broker URL."""

    host: str
    port: int
    tls: bool = False
    websockets: bool = False
    path: str = "/mqtt"
    username: str | None = None
    password: str | None = None

    @property
    def transport(self) -> str:
        return "websockets" if self.websockets else "tcp"


def parse_broker_url(url: str) -> BrokerAddress:
    """Parse ``mqtt://``, ``mqtts://``, ``ws://`` or ``wss://`` broker URLs.

    A bare ``host[:port]`` is treated as ``mqtt://``.
    """
    value = url.strip()
    if not value:
        raise FleetConfigError("Broker URL is empty")
    if "://" not in value:
        value = f"mqtt://{value}"

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise FleetConfigError(f"Unsupported broker scheme {scheme!r} in {url!r}")
    if not parts.hostname:
        raise FleetConfigError(f"Broker URL has no host: {url!r}")
    try:
        port = parts.port or _DEFAULT_PORTS[scheme]
    except ValueError as exc:
        raise FleetConfigError(f"Invalid broker port in {url!r}") from exc

    return BrokerAddress(
        host=parts.hostname,
        port=port,
        tls=scheme in ("mqtts", "ssl", "wss"),
        websockets=scheme in ("ws", "wss"),
        path=parts.path or "/mqtt",
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
    )


def subscription_topics(namespace: str, shared_group: str | None = None) -> list[str]:
    """Topic filters the bridge subscribes to."""
    topics = [
        f"{namespace}/+/battery",
        f"{namespace}/+/status",
        f"{namespace}/{CHARGENODE_SEGMENT}/+",
    ]
    if shared_group:
        return [f"$share/{shared_group}/{topic}" for topic in topics]
    return topics


class FleetMqttRuntime:
    """Threaded paho-mqtt runtime that hands raw messages to an asyncio loop.

    Decoding happens on the loop, not on paho's network thread: the callback
    receives ``(topic, payload, received_at_ms)``.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        config: FleetConfig,
        on_message: MessageCallback,
        client_id: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._on_message = on_message
        self._client_id = client_id or f"pyfleet-bridge-{secrets.token_hex(4)}"
        self._logger = logger or logging.getLogger(__name__)
        self._address = parse_broker_url(config.mqtt_url)
        self._topics = subscription_topics(config.namespace, config.mqtt_shared_group)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False
        self._stats = {"received": 0, "duplicates_skipped": 0, "connects": 0}

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def topics(self) -> list[str]:
        return list(self._topics)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    @property
    def broker(self) -> BrokerAddress:
        return self._address

    def start(self) -> None:
        """Connect (asynchronously, paho reconnects on its own) and subscribe."""
        self.stop()
        address = self._address
        self._logger.info(
            "MQTT runtime starting host=%s port=%s transport=%s tls=%s client_id=%s",
            address.host,
            address.port,
            address.transport,
            address.tls,
            self._client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv311,
            transport=address.transport,
        )
        client.enable_logger(self._logger)
        username = self._config.mqtt_username or address.username
        password = self._config.mqtt_password or address.password
        if username:
            client.username_pw_set(username, password or None)
        if address.tls:
            client.tls_set()
        if address.websockets:
            client.ws_set_options(path=address.path)
        client.reconnect_delay_set(min_delay=1, max_delay=30)

        client.on_connect = self._on_connect
        client.on_message = self._on_paho_message
        client.on_disconnect = self._on_disconnect

        client.connect_async(address.host, address.port, keepalive=self._config.mqtt_keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._connected = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.info("MQTT runtime stopped")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._connected = True
        self._stats["connects"] += 1
        self._logger.info("MQTT connected, subscribing to %s", ", ".join(self._topics))
        client.subscribe([(topic, 1) for topic in self._topics])

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        self._connected = False
        if self._running:
            self._logger.warning("MQTT disconnected: %s", reason_code)

    def _on_paho_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        self._dispatch(msg)

    def _dispatch(self, msg: Any) -> bool:
        """Forward one message to the loop. Returns ``False`` when skipped."""
        if getattr(msg, "dup", False):
            self._stats["duplicates_skipped"] += 1
            self._logger.debug("Skipping redelivered (DUP) packet topic=%s", msg.topic)
            return False
        self._stats["received"] += 1
        received_at_ms = int(time.time() * 1000)
        self._loop.call_soon_threadsafe(self._on_message, msg.topic, bytes(msg.payload), received_at_ms)
        return True
