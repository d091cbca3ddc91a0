"""Normalized ingestion events.

Both ingestion paths (pub/sub and realtime store) convert their inputs
into these events. Only the reconciliation engine applies them.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

from pyloudness.models.device import DeviceLocation


class SourceKind(StrEnum):
    PUBSUB = "pubsub"
    REALTIME_STORE = "realtime_store"
    LOCAL = "local"


class _DeviceEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    source: SourceKind = SourceKind.LOCAL

    @field_validator("device_id")
    @classmethod
    def _normalize_device_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("device_id must be non-empty")
        return device_id


class _ObservedEvent(_DeviceEvent):
    rms: int = 0
    zcr: float = 0.0
    observed_at: datetime

    @field_validator("observed_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class TelemetryEvent(_ObservedEvent):
    """Periodic reading report; refreshes liveness and readings."""


class AlertEvent(_ObservedEvent):
    """Device-reported detection crossing a threshold."""

    kind: str
    received_at: datetime | None = None
    """Arrival time of a live alert; ``None`` for replayed history."""


class HeartbeatEvent(_DeviceEvent):
    """Proof of life that carries no readings (e.g. a ``device_info`` status)."""

    observed_at: datetime


class CalibrationEvent(_DeviceEvent):
    """Calibration progress or result reported on the status channel."""

    observed_at: datetime
    in_progress: bool
    percentage: int = 0
    succeeded: bool | None = None


class DeviceInfoEvent(_DeviceEvent):
    """User-editable metadata; ``None`` fields mean "leave unchanged"."""

    display_name: str | None = None
    location: DeviceLocation | None = None


Event = TelemetryEvent | AlertEvent | HeartbeatEvent | CalibrationEvent | DeviceInfoEvent
