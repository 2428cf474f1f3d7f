"""Internal MQTT bootstrap and threaded paho runtime."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from tachobridge._constants import (
    STATUS_OFFLINE,
    TOPIC_AUTH,
    TOPIC_COMMANDS,
    TOPIC_ROOT,
    TOPIC_STATUS,
)
from tachobridge.config import BridgeConfig
from tachobridge.exceptions import BridgeConfigError, BridgeConnectivityError
from tachobridge.models.server import ServerConfig, parse_broker_host


@dataclass(frozen=True)
class BrokerBootstrap:
    """Everything needed to open one broker session."""

    host: str
    port: int
    client_id: str
    topic_prefix: str
    subscriptions: tuple[str, ...]
    keepalive: int
    tls: bool = True
    tls_insecure: bool = False

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/{TOPIC_STATUS}"


@dataclass(frozen=True)
class BrokerMessage:
    """Raw inbound message."""

    topic: str
    payload: bytes


def topic_prefix(ident: str) -> str:
    return f"{TOPIC_ROOT}/{ident}"


def build_bootstrap(server: ServerConfig, config: BridgeConfig) -> BrokerBootstrap:
    """Broker connection details for the current server settings."""
    try:
        host, port = parse_broker_host(server.host)
    except ValueError as exc:
        raise BridgeConfigError(f"Invalid broker host {server.host!r}: {exc}") from exc
    prefix = topic_prefix(server.ident)
    return BrokerBootstrap(
        host=host,
        port=port,
        client_id=server.ident,
        topic_prefix=prefix,
        subscriptions=(
            f"{prefix}/{TOPIC_COMMANDS}",
            f"{prefix}/{TOPIC_AUTH}/+/request",
        ),
        keepalive=config.keepalive,
        tls=config.tls_enabled,
        tls_insecure=config.tls_insecure,
    )


class BrokerRuntime:
    """Threaded paho-mqtt runtime that reports session events onto an asyncio loop.

    Automatic reconnection is disabled: the owner decides when and how to
    reconnect.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_connect: Callable[[bool, str], None],
        on_disconnect: Callable[[str], None],
        on_message: Callable[[BrokerMessage], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._on_message = on_message
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._subscriptions: tuple[str, ...] = ()

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def _post(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            self._logger.debug("Event loop closed, dropping MQTT callback", exc_info=True)

    def start(self, bootstrap: BrokerBootstrap) -> None:
        """Connect and start the network loop. Blocks until the TCP/TLS connection is up."""
        self.stop()
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s tls=%s",
            bootstrap.host,
            bootstrap.port,
            bootstrap.client_id,
            bootstrap.tls,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=bootstrap.client_id,
            protocol=mqtt.MQTTv5,
            reconnect_on_failure=False,
        )
        client.enable_logger(self._logger)
        if bootstrap.tls:
            client.tls_set()
            if bootstrap.tls_insecure:
                client.tls_insecure_set(True)
        client.will_set(bootstrap.status_topic, STATUS_OFFLINE, qos=1, retain=True)

        self._subscriptions = bootstrap.subscriptions

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._post(self._on_connect, False, str(reason_code))
                return
            self._logger.debug("MQTT connected successfully reason=%s", reason_code)
            for topic in self._subscriptions:
                self._logger.debug("MQTT subscribing topic=%s", topic)
                c.subscribe(topic, qos=1)
            self._post(self._on_connect, True, str(reason_code))

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self._logger.debug("Received PUBLISH topic=%s bytes=%d", msg.topic, len(msg.payload))
            self._post(self._on_message, BrokerMessage(topic=msg.topic, payload=bytes(msg.payload)))

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)
                self._post(self._on_disconnect, str(reason_code))

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        self._running = True
        try:
            client.connect(bootstrap.host, bootstrap.port, keepalive=bootstrap.keepalive)
        except (OSError, ValueError) as exc:
            self._running = False
            raise BridgeConnectivityError(f"Cannot reach broker: {exc}", endpoint=bootstrap.endpoint) from exc
        client.loop_start()

        self._client = client
        self._logger.debug("MQTT network loop started")

    def publish(self, topic: str, payload: str | bytes, *, qos: int = 1, retain: bool = False) -> None:
        client = self._client
        if client is None or not self._running:
            raise BridgeConnectivityError("MQTT runtime not running")
        info = client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BridgeConnectivityError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def stop(self, farewell: tuple[str, str] | None = None, *, timeout: float = 2.0) -> None:
        """Stop and disconnect current MQTT client if running.

        ``farewell`` is a ``(topic, payload)`` published retained before a
        clean disconnect, since the broker does not send the will then.
        """
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False
        self._subscriptions = ()

        if client is None:
            return
        try:
            if was_running:
                if farewell is not None and client.is_connected():
                    info = client.publish(farewell[0], farewell[1], qos=1, retain=True)
                    try:
                        info.wait_for_publish(timeout)
                    except (RuntimeError, ValueError):
                        self._logger.debug("MQTT farewell publish not confirmed", exc_info=True)
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
