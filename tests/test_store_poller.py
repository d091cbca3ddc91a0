from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pyloudness._client.store import RealtimeStorePoller
from pyloudness.engine import ReconciliationEngine
from pyloudness.exceptions import TransportUnavailableError
from pyloudness.state.feed import AlertFeed
from pyloudness.state.registry import DeviceRegistry


def _dt(seconds: float = 0.0) -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=seconds)


class _FakeStore:
    """In-memory stand-in for the realtime-store REST transport."""

    def __init__(self, tree: dict[str, Any]) -> None:
        self.tree = tree
        self.fail = False
        self.broken: set[str] = set()

    @property
    def is_available(self) -> bool:
        return not self.fail

    async def get(self, path: str, *, shallow: bool = False) -> Any:
        if self.fail or any(path.startswith(prefix) for prefix in self.broken):
            raise TransportUnavailableError("offline", endpoint=path)
        node: Any = self.tree
        for segment in path.split("/"):
            if not isinstance(node, dict) or segment not in node:
                return None
            node = node[segment]
        if shallow and isinstance(node, dict):
            return {key: True for key in node}
        return node


def _setup(tree: dict[str, Any]) -> tuple[_FakeStore, ReconciliationEngine, RealtimeStorePoller]:
    registry = DeviceRegistry(clock=_dt)
    engine = ReconciliationEngine(registry, AlertFeed(), clock=_dt)
    store = _FakeStore(tree)
    poller = RealtimeStorePoller(store, engine, poll_interval=0.01)
    registry.add_listener(poller.on_registry_change)
    return store, engine, poller


def _tree() -> dict[str, Any]:
    return {
        "devices": {
            "esp32-001": {
                "status": {"timestamp": 1767225600, "info": {"last_rms": 55, "last_zcr": 0.2}},
                "info": {"device_name": "Reading Room", "floor": "2"},
                "messages": {"old": {"type": "alert", "label": "SPEECH", "timestamp": 1767225500}},
            }
        }
    }


@pytest.mark.asyncio
async def test_first_poll_discovers_devices_and_skips_message_backlog() -> None:
    _store, engine, poller = _setup(_tree())

    submitted = await poller.poll_once()
    engine.start()
    try:
        await engine.drain()
    finally:
        await engine.stop()

    assert submitted == 2
    assert poller.watched == ["esp32-001"]
    record = engine.registry.get("esp32-001")
    assert record is not None
    assert record.display_name == "Reading Room"
    assert record.last_rms == 55
    assert engine.feed.recent() == []


@pytest.mark.asyncio
async def test_unchanged_sections_are_not_resubmitted_and_new_messages_are() -> None:
    store, engine, poller = _setup(_tree())
    await poller.poll_once()

    store.tree["devices"]["esp32-001"]["messages"]["new"] = {
        "type": "alert",
        "label": "KNOCK",
        "timestamp": 1767225600,
    }
    submitted = await poller.poll_once()

    engine.start()
    try:
        await engine.drain()
    finally:
        await engine.stop()

    assert submitted == 1
    assert [item.kind for item in engine.feed.recent()] == ["KNOCK"]


@pytest.mark.asyncio
async def test_removed_device_is_released_and_not_rediscovered() -> None:
    _store, engine, poller = _setup(_tree())
    await poller.poll_once()
    engine.start()
    try:
        await engine.drain()
        await engine.remove_device("esp32-001")
    finally:
        await engine.stop()

    assert poller.watched == []
    assert await poller.poll_once() == 0
    assert poller.watched == []


@pytest.mark.asyncio
async def test_transport_failure_propagates_from_poll_once() -> None:
    store, _engine, poller = _setup(_tree())
    store.fail = True

    with pytest.raises(TransportUnavailableError):
        await poller.poll_once()


@pytest.mark.asyncio
async def test_one_failing_device_does_not_stop_the_round() -> None:
    tree = _tree()
    tree["devices"]["esp32-002"] = {"status": {"timestamp": 1767225600, "info": {"last_rms": 9}}}
    store, engine, poller = _setup(tree)
    store.broken.add("devices/esp32-001/")

    submitted = await poller.poll_once()
    engine.start()
    try:
        await engine.drain()
    finally:
        await engine.stop()

    assert submitted == 1
    assert poller.watched == ["esp32-001", "esp32-002"]
    assert engine.registry.get("esp32-001") is None
    record = engine.registry.get("esp32-002")
    assert record is not None
    assert record.last_rms == 9
