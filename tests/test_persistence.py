from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from pyloudness.exceptions import PersistenceError
from pyloudness.models.device import DeviceLocation, DeviceRecord
from pyloudness.persistence import PersistenceGateway, deserialize_snapshot, serialize_snapshot
from pyloudness.storage import JsonFileStorage, MemoryStorage


def _dt() -> datetime:
    return datetime(2026, 1, 1, 12, 30, tzinfo=UTC)


def _records() -> list[DeviceRecord]:
    return [
        DeviceRecord(
            id="esp32-001",
            display_name="Reading Room",
            location=DeviceLocation(floor="2", zone="North", description="by the window"),
            online=True,
            last_seen_at=_dt(),
            last_rms=420,
            last_zcr=0.125,
        ),
        DeviceRecord(id="esp32-002", display_name="Lobby", broker="broker.local", port=8883),
    ]


class _FailingStorage:
    async def get(self, key: str) -> str | None:
        raise PersistenceError("disk on fire", key=key)

    async def set(self, key: str, value: str) -> None:
        raise PersistenceError("disk on fire", key=key)


def test_snapshot_uses_flat_records() -> None:
    data = json.loads(serialize_snapshot(_records()))

    assert data[0] == {
        "id": "esp32-001",
        "name": "Reading Room",
        "floor": "2",
        "zone": "North",
        "description": "by the window",
        "broker": "test.mosquitto.org",
        "port": 1883,
        "online": True,
        "lastSeenAt": int(_dt().timestamp() * 1000),
        "lastRms": 420,
        "lastZcr": 0.125,
    }
    assert data[1]["lastSeenAt"] is None


def test_missing_fields_take_defaults() -> None:
    records = deserialize_snapshot(json.dumps([{"id": "abc123"}]))

    assert len(records) == 1
    record = records[0]
    assert record.display_name == "Device 123"
    assert record.location == DeviceLocation(floor="Unknown", zone="Unknown", description="")
    assert record.online is False
    assert record.last_seen_at is None
    assert record.last_rms == 0


def test_legacy_keys_are_accepted() -> None:
    records = deserialize_snapshot(
        json.dumps([{"deviceId": "dev1", "deviceName": "Old", "isOnline": True, "lastSeen": 1767225600000}])
    )

    assert records[0].display_name == "Old"
    assert records[0].online is True
    assert records[0].last_seen_at == datetime(2026, 1, 1, tzinfo=UTC)


def test_entries_without_id_are_skipped() -> None:
    records = deserialize_snapshot(json.dumps([{"name": "nameless"}, "junk", {"id": "ok"}, {"id": "ok"}]))

    assert [record.id for record in records] == ["ok"]


@pytest.mark.parametrize("text", ["{not json", '{"id": "dev1"}'])
def test_corrupt_snapshot_loads_empty(text: str) -> None:
    assert deserialize_snapshot(text) == []


@pytest.mark.asyncio
async def test_load_save_load_is_idempotent() -> None:
    gateway = PersistenceGateway(MemoryStorage())
    assert await gateway.save(_records()) is True

    first = await gateway.load()
    assert await gateway.save(first) is True
    second = await gateway.load()

    assert first == second
    assert first == _records()


@pytest.mark.asyncio
async def test_load_of_missing_key_is_empty() -> None:
    gateway = PersistenceGateway(MemoryStorage(), key="other")

    assert await gateway.load() == []


@pytest.mark.asyncio
async def test_storage_failures_are_reported_not_raised() -> None:
    gateway = PersistenceGateway(_FailingStorage())

    assert await gateway.save(_records()) is False
    assert await gateway.load() == []


def test_schedule_save_without_loop_is_skipped() -> None:
    gateway = PersistenceGateway(MemoryStorage())

    assert gateway.schedule_save(_records()) is None


@pytest.mark.asyncio
async def test_json_file_storage_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "state" / "fleet.json"
    storage = JsonFileStorage(path)

    assert await storage.get("devices") is None
    await storage.set("devices", "[]")
    await storage.set("other", "x")

    assert await storage.get("devices") == "[]"
    assert json.loads(path.read_text(encoding="utf-8")) == {"devices": "[]", "other": "x"}


@pytest.mark.asyncio
async def test_json_file_storage_rejects_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "fleet.json"
    path.write_text("[1, 2", encoding="utf-8")

    with pytest.raises(PersistenceError):
        await JsonFileStorage(path).get("devices")


@pytest.mark.asyncio
async def test_save_replaces_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "fleet.json"
    path.write_text("{truncated", encoding="utf-8")
    gateway = PersistenceGateway(JsonFileStorage(path))

    assert await gateway.save(_records()) is True
    assert await gateway.save(_records()[:1]) is True

    loaded = await gateway.load()
    assert [record.id for record in loaded] == ["esp32-001"]


@pytest.mark.asyncio
async def test_failed_write_leaves_no_temp_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "fleet.json"
    storage = JsonFileStorage(path)

    def _refuse(_src: str, _dst: str) -> None:
        raise OSError("read-only file system")

    monkeypatch.setattr(os, "replace", _refuse)

    with pytest.raises(PersistenceError):
        await storage.set("devices", "[]")
    assert list(tmp_path.iterdir()) == []
