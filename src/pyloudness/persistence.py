"""Registry snapshot persistence.

The snapshot is one JSON array of flat device records stored under a single
key. Loading is forgiving: absent fields take their defaults, entries
without an id are skipped, and an unreadable snapshot loads as empty.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from pyloudness._constants import (
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_PORT,
    DEFAULT_STORAGE_KEY,
    PLACEHOLDER_FLOOR,
    PLACEHOLDER_ZONE,
    placeholder_name,
)
from pyloudness.exceptions import PersistenceError
from pyloudness.ingestion.normalize import float_or_zero, int_or_zero, safe_int, safe_str
from pyloudness.models._base import EpochTimestamp, to_epoch_ms
from pyloudness.models.device import DeviceLocation, DeviceRecord
from pyloudness.storage import KeyValueStorage

_logger = logging.getLogger(__name__)


class StoredDevice(BaseModel):
    """On-disk shape of one device.

    Older snapshots used ``deviceId``/``deviceName``/``isOnline``/``lastSeen``;
    those keys are still accepted on load.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "deviceId"))
    name: str | None = Field(default=None, validation_alias=AliasChoices("name", "deviceName"))
    floor: str | None = None
    zone: str | None = None
    description: str | None = None
    broker: str | None = None
    port: int | None = None
    online: bool = Field(default=False, validation_alias=AliasChoices("online", "isOnline"))
    last_seen_at: EpochTimestamp = Field(default=None, validation_alias=AliasChoices("lastSeenAt", "lastSeen"))
    last_rms: int = Field(default=0, validation_alias=AliasChoices("lastRms", "last_rms"))
    last_zcr: float = Field(default=0.0, validation_alias=AliasChoices("lastZcr", "last_zcr"))

    @field_validator("id", mode="before")
    @classmethod
    def _require_id(cls, value: Any) -> str:
        device_id = safe_str(value)
        if device_id is None:
            raise ValueError("id must be non-empty")
        return device_id

    @field_validator("name", "floor", "zone", "description", "broker", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value)

    @field_validator("port", mode="before")
    @classmethod
    def _coerce_port(cls, value: Any) -> int | None:
        return safe_int(value)

    @field_validator("online", mode="before")
    @classmethod
    def _coerce_online(cls, value: Any) -> bool:
        return value is True or value in (1, "true", "True")

    @field_validator("last_rms", mode="before")
    @classmethod
    def _coerce_rms(cls, value: Any) -> int:
        return int_or_zero(value)

    @field_validator("last_zcr", mode="before")
    @classmethod
    def _coerce_zcr(cls, value: Any) -> float:
        return float_or_zero(value)

    @classmethod
    def from_record(cls, record: DeviceRecord) -> StoredDevice:
        return cls(
            id=record.id,
            name=record.display_name,
            floor=record.location.floor,
            zone=record.location.zone,
            description=record.location.description,
            broker=record.broker,
            port=record.port,
            online=record.online,
            last_seen_at=record.last_seen_at,
            last_rms=record.last_rms,
            last_zcr=record.last_zcr,
        )

    def to_record(self) -> DeviceRecord:
        return DeviceRecord(
            id=self.id,
            display_name=self.name if self.name is not None else placeholder_name(self.id),
            location=DeviceLocation(
                floor=self.floor if self.floor is not None else PLACEHOLDER_FLOOR,
                zone=self.zone if self.zone is not None else PLACEHOLDER_ZONE,
                description=self.description or "",
            ),
            broker=self.broker or DEFAULT_BROKER_HOST,
            port=self.port if self.port is not None else DEFAULT_BROKER_PORT,
            online=self.online,
            last_seen_at=self.last_seen_at,
            last_rms=self.last_rms,
            last_zcr=self.last_zcr,
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "floor": self.floor,
            "zone": self.zone,
            "description": self.description,
            "broker": self.broker,
            "port": self.port,
            "online": self.online,
            "lastSeenAt": to_epoch_ms(self.last_seen_at),
            "lastRms": self.last_rms,
            "lastZcr": self.last_zcr,
        }


def serialize_snapshot(records: Iterable[DeviceRecord]) -> str:
    return json.dumps([StoredDevice.from_record(record).to_wire() for record in records], separators=(",", ":"))


def deserialize_snapshot(text: str) -> list[DeviceRecord]:
    """Parse a snapshot; malformed entries are skipped rather than failing the load."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        _logger.warning("Persisted device snapshot is not valid JSON; starting empty")
        return []
    if not isinstance(data, list):
        _logger.warning("Persisted device snapshot is not a JSON array; starting empty")
        return []

    records: list[DeviceRecord] = []
    seen: set[str] = set()
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            _logger.debug("Skipping snapshot entry %d: not an object", index)
            continue
        try:
            record = StoredDevice.model_validate(entry).to_record()
        except ValidationError:
            _logger.debug("Skipping snapshot entry %d", index, exc_info=True)
            continue
        if record.id in seen:
            continue
        seen.add(record.id)
        records.append(record)
    return records


class PersistenceGateway:
    """Saves and loads the registry snapshot through a key-value storage.

    Saves never raise: failures are logged and reported as ``False``; the
    next registry mutation schedules a fresh save of the whole snapshot.
    """

    def __init__(self, storage: KeyValueStorage, *, key: str = DEFAULT_STORAGE_KEY) -> None:
        self._storage = storage
        self._key = key
        self._pending: set[asyncio.Task[bool]] = set()

    @property
    def key(self) -> str:
        return self._key

    async def save(self, records: Iterable[DeviceRecord]) -> bool:
        snapshot = list(records)
        try:
            await self._storage.set(self._key, serialize_snapshot(snapshot))
        except PersistenceError as exc:
            _logger.warning("Saving %d devices failed: %s", len(snapshot), exc)
            return False
        except Exception:
            _logger.warning("Saving %d devices failed", len(snapshot), exc_info=True)
            return False
        _logger.debug("Saved %d devices under key=%s", len(snapshot), self._key)
        return True

    async def load(self) -> list[DeviceRecord]:
        try:
            text = await self._storage.get(self._key)
        except PersistenceError as exc:
            _logger.warning("Loading device snapshot failed: %s", exc)
            return []
        if text is None:
            return []
        records = deserialize_snapshot(text)
        _logger.debug("Loaded %d devices from key=%s", len(records), self._key)
        return records

    def schedule_save(self, records: Iterable[DeviceRecord]) -> asyncio.Task[bool] | None:
        """Fire-and-forget save of ``records``; later saves may overtake earlier ones."""
        snapshot = list(records)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.debug("No running event loop; snapshot of %d devices not saved", len(snapshot))
            return None
        task = loop.create_task(self.save(snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def flush(self) -> None:
        """Wait for saves that are still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
