"""Outbound device commands.

The dispatcher never touches the registry or the engine lock: a command is
a one-way hand-off to whichever transport is configured.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DeviceCommand(enum.StrEnum):
    """Actions understood by the detector firmware."""

    CALIBRATE = "calibrate"
    GET_ALERT_HISTORY = "get_alert_history"


class CommandPayload(BaseModel):
    """Message delivered to one device."""

    model_config = ConfigDict(frozen=True)

    action: str
    issued_at: int

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        action = str(value).strip() if value is not None else ""
        if not action:
            raise ValueError("action must be non-empty")
        return action

    @classmethod
    def build(cls, action: str | DeviceCommand, at: datetime) -> CommandPayload:
        return cls(action=str(action), issued_at=int(at.timestamp() * 1000))

    def to_wire(self) -> dict[str, Any]:
        return {"action": self.action, "issuedAt": self.issued_at}


class CommandSink(Protocol):
    """Structural interface of a transport that can deliver commands.

    Both the MQTT runtime and the realtime-store transport satisfy it; tests
    pass small fakes.
    """

    @property
    def is_available(self) -> bool:
        ...

    async def publish_command(self, device_id: str, payload: CommandPayload) -> None:
        ...


class CommandDispatcher:
    """Sends commands through a :class:`CommandSink`, reporting success as a bool."""

    def __init__(
        self,
        sink: CommandSink | None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def sink(self) -> CommandSink | None:
        return self._sink

    @sink.setter
    def sink(self, value: CommandSink | None) -> None:
        self._sink = value

    async def send(self, device_id: str, action: str | DeviceCommand) -> bool:
        """Hand a command to the transport.

        Returns ``True`` once the transport accepted it. Delivery to the
        device is not confirmed. Returns ``False`` when no transport is
        available or the hand-off failed.
        """
        sink = self._sink
        if sink is None or not sink.is_available:
            _logger.warning("Transport unavailable; command %s for %s dropped", action, device_id)
            return False

        payload = CommandPayload.build(action, self._clock())
        try:
            await sink.publish_command(device_id, payload)
        except Exception as exc:
            _logger.warning("Sending %s to %s failed: %s", payload.action, device_id, exc)
            _logger.debug("Command hand-off failure", exc_info=True)
            return False
        _logger.debug("Command %s handed off for %s", payload.action, device_id)
        return True

    def dispatch(self, device_id: str, action: str | DeviceCommand) -> asyncio.Task[bool]:
        """Schedule :meth:`send` without waiting for it."""
        task = asyncio.get_running_loop().create_task(self.send(device_id, action))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def calibrate(self, device_id: str) -> bool:
        return await self.send(device_id, DeviceCommand.CALIBRATE)

    async def request_alert_history(self, device_id: str) -> bool:
        return await self.send(device_id, DeviceCommand.GET_ALERT_HISTORY)
