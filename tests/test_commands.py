from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

import paho.mqtt.client as mqtt
import pytest

from pyloudness._client.mqtt import MqttCoordinator
from pyloudness._mqtt import LoudnessMqttRuntime, subscription_topics
from pyloudness.commands import CommandDispatcher, CommandPayload, DeviceCommand
from pyloudness.config import FleetConfig
from pyloudness.engine import ReconciliationEngine
from pyloudness.exceptions import TransportUnavailableError
from pyloudness.state.feed import AlertFeed
from pyloudness.state.registry import DeviceRegistry


def _dt() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


class _FakeSink:
    def __init__(self, *, available: bool = True, error: Exception | None = None) -> None:
        self.available = available
        self.error = error
        self.sent: list[tuple[str, CommandPayload]] = []

    @property
    def is_available(self) -> bool:
        return self.available

    async def publish_command(self, device_id: str, payload: CommandPayload) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((device_id, payload))


@pytest.mark.asyncio
async def test_send_hands_payload_to_available_sink() -> None:
    sink = _FakeSink()
    dispatcher = CommandDispatcher(sink, clock=_dt)

    assert await dispatcher.calibrate("dev1") is True

    device_id, payload = sink.sent[0]
    assert device_id == "dev1"
    assert payload.to_wire() == {"action": "calibrate", "issuedAt": 1767225600000}


@pytest.mark.asyncio
async def test_send_accepts_arbitrary_actions() -> None:
    sink = _FakeSink()
    dispatcher = CommandDispatcher(sink, clock=_dt)

    assert await dispatcher.send("dev1", "reboot") is True
    assert sink.sent[0][1].action == "reboot"


@pytest.mark.asyncio
async def test_send_returns_false_when_sink_unavailable() -> None:
    sink = _FakeSink(available=False)
    dispatcher = CommandDispatcher(sink, clock=_dt)

    assert await dispatcher.request_alert_history("dev1") is False
    assert sink.sent == []


@pytest.mark.asyncio
async def test_send_returns_false_without_sink() -> None:
    dispatcher = CommandDispatcher(None, clock=_dt)

    assert await dispatcher.send("dev1", DeviceCommand.CALIBRATE) is False


@pytest.mark.asyncio
async def test_send_returns_false_when_hand_off_fails() -> None:
    sink = _FakeSink(error=TransportUnavailableError("broker gone"))
    dispatcher = CommandDispatcher(sink, clock=_dt)

    assert await dispatcher.send("dev1", DeviceCommand.GET_ALERT_HISTORY) is False


@pytest.mark.asyncio
async def test_dispatch_runs_in_background() -> None:
    sink = _FakeSink()
    dispatcher = CommandDispatcher(sink, clock=_dt)

    task = dispatcher.dispatch("dev1", DeviceCommand.GET_ALERT_HISTORY)

    assert await task is True
    assert sink.sent[0][1].action == "get_alert_history"


def test_payload_rejects_blank_action() -> None:
    with pytest.raises(ValueError):
        CommandPayload(action="  ", issued_at=0)


def test_subscription_topics_cover_every_inbound_kind() -> None:
    assert subscription_topics("library") == [
        "library/+/telemetry",
        "library/+/status",
        "library/+/alert",
        "library/+/alert_history",
    ]


class _FakePahoClient:
    def __init__(self) -> None:
        self.published: list[tuple[str, str, int]] = []

    def publish(self, topic: str, payload: str, qos: int = 0) -> object:
        self.published.append((topic, payload, qos))

        class _Info:
            rc = 0

        return _Info()


@pytest.mark.asyncio
async def test_mqtt_runtime_publishes_command_topic() -> None:
    runtime = LoudnessMqttRuntime(
        config=FleetConfig(namespace="library"),
        loop=asyncio.get_running_loop(),
        on_message=lambda _message: None,
    )
    fake = _FakePahoClient()
    # Bypass the network connect; only the publish path is exercised.
    runtime._client = fake  # type: ignore[assignment]
    runtime._running = True
    runtime._connected = True

    await runtime.publish_command("dev1", CommandPayload.build(DeviceCommand.CALIBRATE, _dt()))

    topic, body, qos = fake.published[0]
    assert topic == "library/dev1/command"
    assert json.loads(body)["action"] == "calibrate"
    assert qos == 0


@pytest.mark.asyncio
async def test_mqtt_runtime_refuses_commands_while_disconnected() -> None:
    runtime = LoudnessMqttRuntime(
        config=FleetConfig(),
        loop=asyncio.get_running_loop(),
        on_message=lambda _message: None,
    )

    assert runtime.is_available is False
    with pytest.raises(TransportUnavailableError):
        await runtime.publish_command("dev1", CommandPayload.build("calibrate", _dt()))


class _ReasonCode:
    def __init__(self, *, failure: bool) -> None:
        self.is_failure = failure


class _OfflinePahoClient:
    """Paho stand-in whose broker has not answered yet."""

    instances: list[_OfflinePahoClient] = []

    def __init__(self, **kwargs: object) -> None:
        self.kwargs = kwargs
        self.connect_args: tuple[str, int] | None = None
        self.loop_started = False
        self.subscribed: list[str] = []
        self.on_connect: Any = None
        self.on_message: Any = None
        self.on_disconnect: Any = None
        _OfflinePahoClient.instances.append(self)

    def enable_logger(self, _logger: logging.Logger) -> None:
        pass

    def tls_set(self) -> None:
        pass

    def connect_async(self, host: str, port: int, keepalive: int = 60) -> None:
        self.connect_args = (host, port)

    def loop_start(self) -> None:
        self.loop_started = True

    def loop_stop(self) -> None:
        self.loop_started = False

    def disconnect(self) -> None:
        pass

    def subscribe(self, topic: str, qos: int = 0) -> None:
        self.subscribed.append(topic)


@pytest.mark.asyncio
async def test_mqtt_start_survives_unreachable_broker(monkeypatch: pytest.MonkeyPatch) -> None:
    _OfflinePahoClient.instances.clear()
    monkeypatch.setattr(mqtt, "Client", _OfflinePahoClient)
    loop = asyncio.get_running_loop()
    engine = ReconciliationEngine(DeviceRegistry(clock=_dt), AlertFeed(), clock=_dt)
    changes: list[bool] = []
    coordinator = MqttCoordinator(
        config=FleetConfig(broker_host="broker.invalid"),
        loop=loop,
        engine=engine,
        on_connection_changed=changes.append,
        logger=logging.getLogger("tests.mqtt"),
    )

    assert await coordinator.ensure_started() is True
    runtime = coordinator.runtime
    assert runtime is not None
    client = _OfflinePahoClient.instances[-1]
    assert client.connect_args == ("broker.invalid", 1883)
    assert client.loop_started is True
    assert runtime.is_running is True
    assert runtime.is_available is False

    # The network thread connects once the broker becomes reachable.
    client.on_connect(client, None, None, _ReasonCode(failure=False), None)
    await asyncio.sleep(0)

    assert runtime.is_available is True
    assert changes == [True]
    assert client.subscribed == subscription_topics("library")

    await coordinator.stop()
    await asyncio.sleep(0)
    assert changes == [True, False]
