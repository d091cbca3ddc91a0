"""Authoritative device registry.

The registry is the only component that changes device records. It is
driven exclusively by the reconciliation engine, which serializes every
call under one lock; the registry itself does no locking.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING

from pyloudness._constants import OFFLINE_TIMEOUT_S
from pyloudness.models.device import DeviceLocation, DeviceRecord
from pyloudness.state.policy import is_stale, should_accept_observation

if TYPE_CHECKING:
    from pyloudness.persistence import PersistenceGateway

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ChangeKind(StrEnum):
    UPSERTED = "upserted"
    OFFLINE = "offline"
    REMOVED = "removed"


@dataclass(frozen=True)
class RegistryChange:
    """Notification sent to registry listeners after each mutation."""

    kind: ChangeKind
    device_id: str
    record: DeviceRecord | None


RegistryListener = Callable[[RegistryChange], None]


class DeviceRegistry:
    """In-memory map of device id to :class:`DeviceRecord`, persisted on change.

    Iteration order is insertion order. Every mutation schedules an
    asynchronous save of the full snapshot and notifies listeners; callers
    never wait for the save.
    """

    def __init__(
        self,
        *,
        gateway: PersistenceGateway | None = None,
        clock: Callable[[], datetime] = _utcnow,
        offline_timeout: timedelta = timedelta(seconds=OFFLINE_TIMEOUT_S),
    ) -> None:
        self._gateway = gateway
        self._clock = clock
        self._offline_timeout = offline_timeout
        self._devices: dict[str, DeviceRecord] = {}
        self._listeners: list[RegistryListener] = []

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def get(self, device_id: str) -> DeviceRecord | None:
        return self._devices.get(device_id)

    def all(self) -> list[DeviceRecord]:
        return list(self._devices.values())

    def ids(self) -> list[str]:
        return list(self._devices)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert_telemetry(self, device_id: str, rms: int, zcr: float, at: datetime) -> DeviceRecord:
        """Apply a reading observed at ``at``, creating the device if unseen.

        Readings older than the record's ``last_seen_at`` are ignored and the
        current record is returned unchanged.
        """
        current = self._devices.get(device_id)
        if current is None:
            current = DeviceRecord.discovered(device_id)
            _logger.info("Discovered device %s", device_id)
        elif not should_accept_observation(current.last_seen_at, at):
            _logger.debug(
                "Ignoring out-of-order reading for %s (at=%s, last_seen_at=%s)",
                device_id,
                at.isoformat(),
                current.last_seen_at.isoformat() if current.last_seen_at else None,
            )
            return current

        # A late-delivered reading refreshes values but cannot assert liveness.
        online = not is_stale(self._clock(), at, self._offline_timeout)
        updated = current.model_copy(
            update={
                "last_rms": rms,
                "last_zcr": zcr,
                "last_seen_at": at,
                "online": online,
            }
        )
        self._commit(updated, ChangeKind.UPSERTED)
        return updated

    def touch(self, device_id: str, at: datetime) -> DeviceRecord:
        """Refresh liveness from a message without readings, creating the device if unseen."""
        current = self._devices.get(device_id)
        if current is None:
            current = DeviceRecord.discovered(device_id)
            _logger.info("Discovered device %s", device_id)
        elif current.last_seen_at == at or not should_accept_observation(current.last_seen_at, at):
            return current

        online = not is_stale(self._clock(), at, self._offline_timeout)
        updated = current.model_copy(update={"last_seen_at": at, "online": online})
        self._commit(updated, ChangeKind.UPSERTED)
        return updated

    def upsert_info(
        self,
        device_id: str,
        display_name: str | None = None,
        location: DeviceLocation | None = None,
    ) -> DeviceRecord | None:
        """Update user-editable fields that are provided; unknown ids are ignored."""
        current = self._devices.get(device_id)
        if current is None:
            _logger.debug("Info for unknown device %s ignored until it reports", device_id)
            return None

        update: dict[str, object] = {}
        if display_name is not None and display_name != current.display_name:
            update["display_name"] = display_name
        if location is not None and location != current.location:
            update["location"] = location
        if not update:
            return current

        updated = current.model_copy(update=update)
        self._commit(updated, ChangeKind.UPSERTED)
        return updated

    def add(self, record: DeviceRecord) -> DeviceRecord:
        """Register a device ahead of its first report; existing ids are left untouched."""
        current = self._devices.get(record.id)
        if current is not None:
            return current
        self._commit(record, ChangeKind.UPSERTED)
        return record

    def mark_offline(self, device_id: str) -> DeviceRecord | None:
        current = self._devices.get(device_id)
        if current is None or not current.online:
            return current
        updated = current.model_copy(update={"online": False})
        self._commit(updated, ChangeKind.OFFLINE)
        return updated

    def delete(self, device_id: str) -> bool:
        removed = self._devices.pop(device_id, None)
        if removed is None:
            return False
        _logger.info("Removed device %s", device_id)
        self._persist()
        self._notify(RegistryChange(ChangeKind.REMOVED, device_id, None))
        return True

    def restore(self, records: Iterable[DeviceRecord]) -> None:
        """Initialize from a loaded snapshot; does not schedule a save."""
        self._devices = {}
        for record in records:
            self._devices.setdefault(record.id, record)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: RegistryListener) -> Callable[[], None]:
        """Register a change callback; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _commit(self, record: DeviceRecord, kind: ChangeKind) -> None:
        self._devices[record.id] = record
        self._persist()
        self._notify(RegistryChange(kind, record.id, record))

    def _persist(self) -> None:
        if self._gateway is not None:
            self._gateway.schedule_save(self.all())

    def _notify(self, change: RegistryChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                _logger.debug("Registry listener failed for %s", change.device_id, exc_info=True)
