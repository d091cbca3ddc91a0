"""High-level async client for a fleet of loudness detectors."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import aiohttp

from pyloudness._client.mqtt import MqttCoordinator
from pyloudness._client.store import RealtimeStorePoller
from pyloudness._transport import RealtimeStoreTransport
from pyloudness.commands import CommandDispatcher, CommandSink, DeviceCommand
from pyloudness.config import FleetConfig, TransportKind
from pyloudness.engine import ReconciliationEngine
from pyloudness.exceptions import LoudnessError, TransportUnavailableError
from pyloudness.ingestion.normalizer import RawMessage
from pyloudness.models._base import to_epoch_ms
from pyloudness.models.alert import AlertNotification
from pyloudness.models.device import CalibrationStatus, DeviceLocation, DeviceRecord
from pyloudness.persistence import PersistenceGateway
from pyloudness.state.events import SourceKind
from pyloudness.state.feed import AlertFeed
from pyloudness.state.registry import DeviceRegistry
from pyloudness.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FleetClient:
    """Async client that keeps a reconciled view of every detector.

    Usage::

        async with FleetClient(FleetConfig.from_env()) as client:
            for device in client.devices:
                print(device.display_name, device.online)
            await client.calibrate("esp32-001")
    """

    def __init__(
        self,
        config: FleetConfig | None = None,
        *,
        storage: KeyValueStorage | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = _utcnow,
        on_alert: Callable[[AlertNotification], None] | None = None,
        on_connection_changed: Callable[[bool], None] | None = None,
    ) -> None:
        self._config = config or FleetConfig.from_env()
        self._clock = clock
        if storage is None:
            storage = JsonFileStorage(self._config.storage_path) if self._config.storage_path else MemoryStorage()
        self._gateway = PersistenceGateway(storage, key=self._config.storage_key)
        self._registry = DeviceRegistry(
            gateway=self._gateway,
            clock=clock,
            offline_timeout=timedelta(seconds=self._config.offline_timeout),
        )
        self._feed = AlertFeed(self._config.alert_feed_capacity)
        if on_alert is not None:
            self._feed.add_listener(on_alert)
        self._engine = ReconciliationEngine.from_config(self._config, self._registry, self._feed, clock=clock)
        self._dispatcher = CommandDispatcher(None, clock=clock)

        self._external_session = session is not None
        self._http_session = session
        self._on_connection_changed = on_connection_changed
        self._mqtt: MqttCoordinator | None = None
        self._store_transport: RealtimeStoreTransport | None = None
        self._poller: RealtimeStorePoller | None = None
        self._unsubscribe_poller: Callable[[], None] | None = None
        self._started = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> FleetClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Restore the persisted registry, then start the engine and the transport."""
        if self._started:
            return
        records = await self._gateway.load()
        self._registry.restore(records)
        _logger.debug("Restored %d devices", len(records))
        self._engine.start()
        self._started = True
        await self._start_transport()

    async def close(self) -> None:
        if self._unsubscribe_poller is not None:
            self._unsubscribe_poller()
            self._unsubscribe_poller = None
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        if self._mqtt is not None:
            await self._mqtt.stop()
            self._mqtt = None
        self._store_transport = None
        self._dispatcher.sink = None
        await self._engine.stop()
        await self._gateway.flush()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        self._started = False

    async def _start_transport(self) -> None:
        config = self._config
        if config.transport == TransportKind.MQTT:
            self._mqtt = MqttCoordinator(
                config=config,
                loop=asyncio.get_running_loop(),
                engine=self._engine,
                on_connection_changed=self._handle_connection_changed,
                logger=_logger,
            )
            await self._mqtt.ensure_started()
            self._dispatcher.sink = self._mqtt.runtime
        elif config.transport == TransportKind.REALTIME_STORE:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            assert config.store_url is not None  # noqa: S101
            transport = RealtimeStoreTransport(
                config.store_url,
                self._http_session,
                auth=config.store_auth,
                on_availability_changed=self._handle_connection_changed,
            )
            poller = RealtimeStorePoller(
                transport,
                self._engine,
                poll_interval=config.store_poll_interval,
                discover=config.store_discover,
            )
            for device_id in self._registry.ids():
                poller.watch(device_id)
            self._unsubscribe_poller = self._registry.add_listener(poller.on_registry_change)
            poller.start()
            self._store_transport = transport
            self._poller = poller
            self._dispatcher.sink = transport
        else:
            _logger.debug("No transport configured; events arrive through ingest() only")

    def _handle_connection_changed(self, available: bool) -> None:
        _logger.info("Transport %s", "available" if available else "unavailable")
        if self._on_connection_changed is None:
            return
        try:
            self._on_connection_changed(available)
        except Exception:
            _logger.debug("Connection callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def config(self) -> FleetConfig:
        return self._config

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    @property
    def devices(self) -> list[DeviceRecord]:
        return self._registry.all()

    def get_device(self, device_id: str) -> DeviceRecord | None:
        return self._registry.get(device_id)

    @property
    def recent_alerts(self) -> list[AlertNotification]:
        return self._feed.recent()

    def calibration_status(self, device_id: str) -> CalibrationStatus | None:
        return self._engine.calibration(device_id)

    @property
    def transport_available(self) -> bool:
        sink: CommandSink | None = self._dispatcher.sink
        return sink is not None and sink.is_available

    # ------------------------------------------------------------------
    # Device management
    # ------------------------------------------------------------------

    async def add_device(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location: DeviceLocation | None = None,
        broker: str | None = None,
        port: int | None = None,
    ) -> DeviceRecord:
        """Register a device before it reports. Existing devices are returned unchanged."""
        record = DeviceRecord.discovered(device_id)
        update: dict[str, Any] = {}
        if display_name is not None:
            update["display_name"] = display_name
        update["location"] = location if location is not None else DeviceLocation()
        if broker is not None:
            update["broker"] = broker
        if port is not None:
            update["port"] = port
        return await self._engine.register_device(record.model_copy(update=update))

    async def update_device(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location: DeviceLocation | None = None,
    ) -> DeviceRecord | None:
        """Change the user-editable fields of a known device.

        With the realtime-store transport the new values are also written to
        ``devices/<id>/info``; a failed write is logged and the local change
        is kept.
        """
        record = await self._engine.edit_device(device_id, display_name=display_name, location=location)
        if record is None or self._store_transport is None:
            return record
        try:
            await self._store_transport.write_device_info(record, updated_at_ms=to_epoch_ms(self._clock()) or 0)
        except TransportUnavailableError as exc:
            _logger.warning("Writing info for %s to the realtime store failed: %s", device_id, exc)
        return record

    async def delete_device(self, device_id: str) -> bool:
        return await self._engine.remove_device(device_id)

    async def sweep(self) -> list[str]:
        """Run an offline sweep now instead of waiting for the next period."""
        return await self._engine.sweep()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def send_command(self, device_id: str, action: str | DeviceCommand) -> bool:
        return await self._dispatcher.send(device_id, action)

    async def calibrate(self, device_id: str) -> bool:
        return await self._dispatcher.calibrate(device_id)

    async def request_alert_history(self, device_id: str) -> bool:
        return await self._dispatcher.request_alert_history(device_id)

    # ------------------------------------------------------------------
    # Direct ingestion
    # ------------------------------------------------------------------

    async def ingest(
        self,
        source_kind: SourceKind | str,
        origin: str,
        payload: bytes | str | Mapping[str, Any] | list[Any],
    ) -> list[AlertNotification]:
        """Apply a payload received by a transport the caller runs itself.

        Returns the notifications it produced. Malformed payloads are logged
        and produce none.
        """
        try:
            kind = SourceKind(source_kind)
        except ValueError as exc:
            raise LoudnessError(f"Unknown source kind {source_kind!r}") from exc
        return await self._engine.ingest(kind, RawMessage(origin=origin, payload=payload))
