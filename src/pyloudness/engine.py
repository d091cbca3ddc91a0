"""Fleet reconciliation engine.

Owns:
- the single inbound event queue and its one consumer task
- applying normalized events to the device registry
- the per-device alert cooldown
- the latest calibration report per device
- the periodic offline sweep

Every registry mutation, from the queue consumer, the sweeper or a caller
edit, runs under one ``asyncio.Lock`` so they never interleave.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pyloudness._constants import ALERT_COOLDOWN_S, OFFLINE_TIMEOUT_S, SWEEP_INTERVAL_S
from pyloudness.config import FleetConfig
from pyloudness.exceptions import NormalizationError
from pyloudness.ingestion.normalizer import RawMessage, normalize_all
from pyloudness.models.alert import AlertNotification
from pyloudness.models.device import CalibrationStatus, DeviceLocation, DeviceRecord
from pyloudness.state.events import (
    AlertEvent,
    CalibrationEvent,
    DeviceInfoEvent,
    Event,
    HeartbeatEvent,
    SourceKind,
    TelemetryEvent,
)
from pyloudness.state.feed import AlertFeed
from pyloudness.state.policy import is_stale, is_within_cooldown
from pyloudness.state.registry import DeviceRegistry

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


_QueueItem = tuple[SourceKind, RawMessage, datetime]


class ReconciliationEngine:
    """Applies events to the registry and feed, and demotes silent devices.

    Usage::

        engine = ReconciliationEngine(registry, feed)
        engine.start()
        engine.submit(SourceKind.PUBSUB, RawMessage("library/dev1/status", b'{"rms": 42}'))
        ...
        await engine.stop()
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        feed: AlertFeed,
        *,
        clock: Callable[[], datetime] = _utcnow,
        offline_timeout: timedelta = timedelta(seconds=OFFLINE_TIMEOUT_S),
        alert_cooldown: timedelta = timedelta(seconds=ALERT_COOLDOWN_S),
        sweep_interval: float = SWEEP_INTERVAL_S,
    ) -> None:
        self._registry = registry
        self._feed = feed
        self._clock = clock
        self._offline_timeout = offline_timeout
        self._alert_cooldown = alert_cooldown
        self._sweep_interval = sweep_interval
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[_QueueItem] = asyncio.Queue()
        self._last_alert_at: dict[str, datetime] = {}
        self._calibration: dict[str, CalibrationStatus] = {}
        self._consumer: asyncio.Task[None] | None = None
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: FleetConfig,
        registry: DeviceRegistry,
        feed: AlertFeed,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> ReconciliationEngine:
        return cls(
            registry,
            feed,
            clock=clock,
            offline_timeout=timedelta(seconds=config.offline_timeout),
            alert_cooldown=timedelta(seconds=config.alert_cooldown),
            sweep_interval=config.sweep_interval,
        )

    @property
    def registry(self) -> DeviceRegistry:
        return self._registry

    @property
    def feed(self) -> AlertFeed:
        return self._feed

    def calibration(self, device_id: str) -> CalibrationStatus | None:
        """Latest calibration report from ``device_id``, if any arrived."""
        return self._calibration.get(device_id)

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def on_event(self, event: Event) -> AlertNotification | None:
        """Apply one normalized event; returns the notification an alert produced, if any."""
        async with self._lock:
            return self._apply(event)

    def _apply(self, event: Event) -> AlertNotification | None:
        if isinstance(event, TelemetryEvent):
            self._registry.upsert_telemetry(event.device_id, event.rms, event.zcr, event.observed_at)
            return None
        if isinstance(event, DeviceInfoEvent):
            self._registry.upsert_info(event.device_id, event.display_name, event.location)
            return None
        if isinstance(event, AlertEvent):
            return self._apply_alert(event)
        if isinstance(event, HeartbeatEvent):
            self._registry.touch(event.device_id, event.observed_at)
            return None
        if isinstance(event, CalibrationEvent):
            self._apply_calibration(event)
            return None
        raise TypeError(f"Unsupported event type {type(event).__name__}")

    def _apply_calibration(self, event: CalibrationEvent) -> None:
        self._registry.touch(event.device_id, event.observed_at)
        status = CalibrationStatus(
            in_progress=event.in_progress,
            percentage=event.percentage,
            succeeded=event.succeeded,
            updated_at=event.observed_at,
        )
        self._calibration[event.device_id] = status
        if not event.in_progress:
            _logger.info(
                "Calibration of %s %s",
                event.device_id,
                "succeeded" if event.succeeded else "failed",
            )

    def _apply_alert(self, event: AlertEvent) -> AlertNotification | None:
        now = self._clock()
        if is_within_cooldown(now, self._last_alert_at.get(event.device_id), self._alert_cooldown):
            _logger.debug("Alert %s from %s suppressed by cooldown", event.kind, event.device_id)
            return None
        self._last_alert_at[event.device_id] = now

        seen_at = event.received_at or event.observed_at
        record = self._registry.upsert_telemetry(event.device_id, event.rms, event.zcr, seen_at)
        notification = AlertNotification(
            device_id=event.device_id,
            kind=event.kind,
            message=AlertNotification.format_message(event.kind, record.display_name or event.device_id),
            rms=event.rms,
            zcr=event.zcr,
            observed_at=event.observed_at,
        )
        self._feed.push(notification)
        _logger.info("Alert from %s: %s", event.device_id, notification.message)
        return notification

    async def ingest(
        self,
        source_kind: SourceKind,
        raw: RawMessage,
        *,
        received_at: datetime | None = None,
    ) -> list[AlertNotification]:
        """Normalize and apply a raw payload right away.

        Malformed payloads are logged and dropped; the returned list holds the
        notifications produced, if any.
        """
        try:
            events = normalize_all(source_kind, raw, received_at=received_at or self._clock())
        except NormalizationError as exc:
            _logger.debug("Dropping payload from %s: %s", raw.origin, exc)
            return []

        notifications: list[AlertNotification] = []
        for event in events:
            try:
                notification = await self.on_event(event)
            except Exception:
                _logger.warning("Failed to apply %s for %s", type(event).__name__, event.device_id, exc_info=True)
                continue
            if notification is not None:
                notifications.append(notification)
        return notifications

    # ------------------------------------------------------------------
    # Offline sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Mark online devices silent for longer than the offline timeout as offline.

        Returns the ids that were demoted.
        """
        async with self._lock:
            current = now or self._clock()
            demoted: list[str] = []
            for record in self._registry.all():
                if record.online and is_stale(current, record.last_seen_at, self._offline_timeout):
                    self._registry.mark_offline(record.id)
                    demoted.append(record.id)
        if demoted:
            _logger.info("Devices went offline: %s", ", ".join(demoted))
        return demoted

    async def run_sweeper(self) -> None:
        """Sweep every ``sweep_interval`` seconds until cancelled.

        A sweep always finishes before the next sleep starts, so sweeps never
        overlap.
        """
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception:
                _logger.warning("Offline sweep failed", exc_info=True)

    # ------------------------------------------------------------------
    # Queue consumer
    # ------------------------------------------------------------------

    def submit(self, source_kind: SourceKind, raw: RawMessage) -> None:
        """Queue a raw payload for the consumer task.

        Must be called on the event loop thread; transports running their own
        threads hand over with ``loop.call_soon_threadsafe(engine.submit, ...)``.
        """
        self._queue.put_nowait((source_kind, raw, self._clock()))

    async def run(self) -> None:
        """Drain the queue one payload at a time, in arrival order, until cancelled."""
        while True:
            source_kind, raw, received_at = await self._queue.get()
            try:
                await self.ingest(source_kind, raw, received_at=received_at)
            except Exception:
                _logger.warning("Unexpected failure ingesting payload from %s", raw.origin, exc_info=True)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued payload has been processed."""
        await self._queue.join()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        if self._consumer is None or self._consumer.done():
            self._consumer = loop.create_task(self.run(), name="pyloudness-consumer")
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = loop.create_task(self.run_sweeper(), name="pyloudness-sweeper")

    async def stop(self) -> None:
        tasks = [task for task in (self._consumer, self._sweeper) if task is not None]
        self._consumer = None
        self._sweeper = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # ------------------------------------------------------------------
    # Caller-initiated changes
    # ------------------------------------------------------------------

    async def register_device(self, record: DeviceRecord) -> DeviceRecord:
        """Add a user-registered device. It stays offline until its first report."""
        async with self._lock:
            return self._registry.add(record.model_copy(update={"online": False}))

    async def edit_device(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location: DeviceLocation | None = None,
    ) -> DeviceRecord | None:
        event = DeviceInfoEvent(
            device_id=device_id,
            source=SourceKind.LOCAL,
            display_name=display_name,
            location=location,
        )
        async with self._lock:
            self._apply(event)
            return self._registry.get(device_id)

    async def remove_device(self, device_id: str) -> bool:
        async with self._lock:
            self._last_alert_at.pop(device_id, None)
            self._calibration.pop(device_id, None)
            return self._registry.delete(device_id)
