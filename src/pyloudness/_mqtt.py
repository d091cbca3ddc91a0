"""Internal MQTT runtime for the pub/sub transport."""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyloudness._constants import COMMAND_TOPIC_KIND, SUBSCRIBED_TOPIC_KINDS, pubsub_topic
from pyloudness.commands import CommandPayload
from pyloudness.config import FleetConfig
from pyloudness.exceptions import TransportUnavailableError


@dataclass(frozen=True)
class MqttMessage:
    """One received PUBLISH, handed to the event loop untouched."""

    topic: str
    payload: bytes


def build_client_id(config: FleetConfig) -> str:
    if config.mqtt_client_id:
        return config.mqtt_client_id
    return f"pyloudness_{secrets.token_hex(6)}"


def subscription_topics(namespace: str) -> list[str]:
    return [pubsub_topic(namespace, "+", kind) for kind in SUBSCRIBED_TOPIC_KINDS]


class LoudnessMqttRuntime:
    """Threaded paho-mqtt runtime that forwards messages onto an asyncio loop.

    Also acts as the command sink for the pub/sub transport.
    """

    def __init__(
        self,
        *,
        config: FleetConfig,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[MqttMessage], None],
        on_connection_changed: Callable[[bool], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._loop = loop
        self._on_message = on_message
        self._on_connection_changed = on_connection_changed
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False
        self._connected = False

    @property
    def is_running(self) -> bool:
        """Whether the network loop thread is active."""
        return self._running

    @property
    def is_available(self) -> bool:
        """Whether the broker session is currently established."""
        return self._running and self._connected

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        if self._on_connection_changed is not None:
            self._loop.call_soon_threadsafe(self._on_connection_changed, connected)

    def start(self) -> None:
        """Start the network loop and subscribe to every device topic on connect.

        The connection is opened by the loop thread, which keeps retrying
        until the broker answers, so an unreachable broker at startup does
        not raise. Availability follows the connect and disconnect callbacks.
        """
        self.stop()
        config = self._config
        client_id = build_client_id(config)
        topics = subscription_topics(config.namespace)
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            config.broker_host,
            config.broker_port,
            client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=mqtt.MQTTv311,
        )
        client.enable_logger(self._logger)
        if config.mqtt_tls:
            client.tls_set()

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.is_failure:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                self._set_connected(False)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)
            for topic in topics:
                self._logger.debug("MQTT subscribing topic=%s", topic)
                c.subscribe(topic, qos=0)
            self._set_connected(True)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            try:
                self._logger.debug("Received PUBLISH topic=%s bytes=%d", msg.topic, len(msg.payload))
                self._loop.call_soon_threadsafe(self._on_message, MqttMessage(topic=msg.topic, payload=msg.payload))
            except Exception:
                self._logger.debug("MQTT message hand-off failure", exc_info=True)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)
            self._set_connected(False)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        try:
            client.connect_async(config.broker_host, config.broker_port, keepalive=config.mqtt_keepalive)
        except ValueError as exc:
            raise TransportUnavailableError(
                f"Invalid broker address {config.broker_host}:{config.broker_port}: {exc}",
                endpoint=f"{config.broker_host}:{config.broker_port}",
            ) from exc
        self._client = client
        self._running = True
        client.loop_start()
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the current client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._set_connected(False)
            self._logger.debug("MQTT network loop stopped")

    async def publish_command(self, device_id: str, payload: CommandPayload) -> None:
        client = self._client
        topic = pubsub_topic(self._config.namespace, device_id, COMMAND_TOPIC_KIND)
        if client is None or not self.is_available:
            raise TransportUnavailableError("MQTT client is not connected", endpoint=topic)
        body = json.dumps(payload.to_wire(), separators=(",", ":"))
        info = client.publish(topic, body, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportUnavailableError(
                f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}",
                endpoint=topic,
            )
        self._logger.debug("MQTT published topic=%s payload=%s", topic, body)
