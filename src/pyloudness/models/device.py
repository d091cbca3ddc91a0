"""Device record models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator

from pyloudness._constants import (
    AUTO_DISCOVERED_DESCRIPTION,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_PORT,
    PLACEHOLDER_FLOOR,
    PLACEHOLDER_ZONE,
    placeholder_name,
)
from pyloudness.models._base import ensure_utc


class DeviceLocation(BaseModel):
    """Where a sensor node is mounted."""

    model_config = ConfigDict(frozen=True)

    floor: str = PLACEHOLDER_FLOOR
    zone: str = PLACEHOLDER_ZONE
    description: str = ""


class DeviceRecord(BaseModel):
    """One physical sensor node as tracked by the registry.

    Records are immutable; the registry replaces a record wholesale on every
    accepted change so readers can hold on to a snapshot safely.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    """Stable device id assigned by the firmware."""

    display_name: str
    """User-editable name."""

    location: DeviceLocation = DeviceLocation()
    """User-editable mounting location."""

    broker: str = DEFAULT_BROKER_HOST
    """Broker the device publishes to."""

    port: int = DEFAULT_BROKER_PORT
    """Broker port the device publishes to."""

    online: bool = False
    """Derived liveness; only the reconciliation engine changes it."""

    last_seen_at: datetime | None = None
    """Observation time of the newest accepted telemetry or alert."""

    last_rms: int = 0
    """Last loudness (RMS) reading."""

    last_zcr: float = 0.0
    """Last zero-crossing-rate reading."""

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        device_id = value.strip()
        if not device_id:
            raise ValueError("id must be non-empty")
        return device_id

    @field_validator("last_seen_at")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return value
        return ensure_utc(value)

    @classmethod
    def discovered(cls, device_id: str) -> DeviceRecord:
        """Placeholder record for a device first seen on the wire."""
        return cls(
            id=device_id,
            display_name=placeholder_name(device_id.strip()),
            location=DeviceLocation(description=AUTO_DISCOVERED_DESCRIPTION),
        )


class CalibrationStatus(BaseModel):
    """Latest calibration report from a device; not persisted."""

    model_config = ConfigDict(frozen=True)

    in_progress: bool
    percentage: int = 0
    succeeded: bool | None = None
    """Outcome of the last finished run; ``None`` while running or unknown."""
    updated_at: datetime
