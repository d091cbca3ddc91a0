"""Internal realtime-store polling for FleetClient.

Owns:
- the set of watched device ids (registry ids plus shallow discovery)
- change detection so unchanged sections are not re-ingested
- forwarding new snapshots to the engine queue
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any

from pyloudness._constants import STORE_INFO, STORE_MESSAGES, STORE_ROOT, STORE_STATUS, store_path
from pyloudness._transport import StoreTransport
from pyloudness.engine import ReconciliationEngine
from pyloudness.exceptions import TransportUnavailableError
from pyloudness.ingestion.normalizer import RawMessage
from pyloudness.state.events import SourceKind
from pyloudness.state.registry import ChangeKind, RegistryChange

_logger = logging.getLogger(__name__)


def _fingerprint(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class RealtimeStorePoller:
    """Polls ``devices/<id>/{status,info,messages}`` and submits what changed.

    Message children already present the first time a device is polled are
    remembered but not ingested, so a restart does not replay old alerts.
    Removing a device from the registry stops its watch; discovery skips it
    until it is added again.
    """

    def __init__(
        self,
        transport: StoreTransport,
        engine: ReconciliationEngine,
        *,
        poll_interval: float,
        discover: bool = True,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self._poll_interval = poll_interval
        self._discover = discover
        self._watched: dict[str, None] = {}
        self._released: set[str] = set()
        self._fingerprints: dict[tuple[str, str], str] = {}
        self._seen_messages: dict[str, set[str]] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def watched(self) -> list[str]:
        return list(self._watched)

    def watch(self, device_id: str) -> None:
        self._released.discard(device_id)
        if device_id not in self._watched:
            _logger.debug("Watching store device %s", device_id)
            self._watched[device_id] = None

    def release(self, device_id: str) -> None:
        self._watched.pop(device_id, None)
        self._released.add(device_id)
        self._seen_messages.pop(device_id, None)
        for section in (STORE_STATUS, STORE_INFO):
            self._fingerprints.pop((device_id, section), None)
        _logger.debug("Released store device %s", device_id)

    def on_registry_change(self, change: RegistryChange) -> None:
        """Registry listener keeping the watch list in step with the registry."""
        if change.kind == ChangeKind.REMOVED:
            self.release(change.device_id)
        elif change.kind == ChangeKind.UPSERTED and change.device_id not in self._watched:
            self.watch(change.device_id)

    async def discover(self) -> list[str]:
        """Watch every device id listed under the store root; returns new ids."""
        listing = await self._transport.get(STORE_ROOT, shallow=True)
        if not isinstance(listing, Mapping):
            return []
        added: list[str] = []
        for device_id in listing:
            if not isinstance(device_id, str) or device_id in self._watched or device_id in self._released:
                continue
            self.watch(device_id)
            added.append(device_id)
        if added:
            _logger.info("Discovered store devices: %s", ", ".join(added))
        return added

    async def poll_device(self, device_id: str) -> int:
        """Poll one device; returns the number of snapshots submitted."""
        submitted = 0
        for section in (STORE_STATUS, STORE_INFO):
            path = store_path(device_id, section)
            value = await self._transport.get(path)
            if value is None:
                continue
            fingerprint = _fingerprint(value)
            if self._fingerprints.get((device_id, section)) == fingerprint:
                continue
            self._fingerprints[(device_id, section)] = fingerprint
            self._engine.submit(SourceKind.REALTIME_STORE, RawMessage(origin=path, payload=value))
            submitted += 1

        path = store_path(device_id, STORE_MESSAGES)
        messages = await self._transport.get(path)
        if isinstance(messages, Mapping):
            seen = self._seen_messages.get(device_id)
            if seen is None:
                self._seen_messages[device_id] = set(messages)
            else:
                for key, child in messages.items():
                    if key in seen:
                        continue
                    seen.add(key)
                    self._engine.submit(
                        SourceKind.REALTIME_STORE,
                        RawMessage(origin=f"{path}/{key}", payload=child),
                    )
                    submitted += 1
        elif device_id not in self._seen_messages:
            self._seen_messages[device_id] = set()
        return submitted

    async def poll_once(self) -> int:
        """Discover, then poll every watched device; returns the snapshots submitted.

        A failed discovery propagates. A device whose read fails is skipped
        for this round and the rest are still polled.
        """
        if self._discover:
            await self.discover()
        submitted = 0
        for device_id in list(self._watched):
            try:
                submitted += await self.poll_device(device_id)
            except TransportUnavailableError as exc:
                _logger.debug("Polling store device %s failed: %s", device_id, exc)
        return submitted

    async def run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except TransportUnavailableError as exc:
                _logger.debug("Realtime store poll failed: %s", exc)
            except Exception:
                _logger.warning("Unexpected realtime store poll failure", exc_info=True)
            await asyncio.sleep(self._poll_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run(), name="pyloudness-store-poller")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
