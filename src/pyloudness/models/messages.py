"""Inbound wire payload models.

Two independent shapes reach the library:

* pub/sub messages: a flat JSON object per publish on
  ``<namespace>/<deviceId>/<kind>``;
* realtime-store snapshots: nested maps rooted at
  ``devices/<deviceId>/{status,info,messages}``.

Parsing is deliberately lenient. Missing numbers become ``0`` and
unparseable strings become ``None``; only structurally invalid input is
rejected by the normalizer.
"""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, Field, field_validator

from pyloudness._constants import UNKNOWN_ALERT_KIND
from pyloudness.ingestion.normalize import float_or_zero, int_or_zero, mapping_or_empty, safe_str
from pyloudness.models._base import EpochTimestamp, WireModel

# Generic "type" values that say *that* something was detected, not *what*.
_GENERIC_ALERT_TYPES = frozenset({"alert", "alarm", "detection"})


class PubSubMessage(WireModel):
    """Flat pub/sub message (``status``, ``telemetry``, ``alert`` topics)."""

    device_id: str | None = Field(default=None, validation_alias=AliasChoices("device_id", "deviceId"))
    device_name: str | None = None
    type: str | None = None
    event: str | None = None
    label: str | None = None
    status: str | None = None
    confidence: str | None = None
    timestamp: EpochTimestamp = None
    rms: int = 0
    zcr: float = 0.0
    location: dict[str, Any] = Field(default_factory=dict)
    progress: dict[str, Any] = Field(default_factory=dict)
    calibration_complete: bool | None = None

    @field_validator("device_id", "device_name", "type", "event", "label", "status", "confidence", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("rms", mode="before")
    @classmethod
    def _coerce_rms(cls, value: Any) -> int:
        return int_or_zero(value)

    @field_validator("zcr", mode="before")
    @classmethod
    def _coerce_zcr(cls, value: Any) -> float:
        return float_or_zero(value)

    @field_validator("location", "progress", mode="before")
    @classmethod
    def _coerce_mapping(cls, value: Any) -> dict[str, Any]:
        return mapping_or_empty(value)

    @field_validator("calibration_complete", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool | None:
        return value if isinstance(value, bool) else None

    @property
    def calibration_percentage(self) -> int:
        return max(0, min(100, int_or_zero(self.progress.get("percentage"))))

    @property
    def alert_kind(self) -> str:
        """What was detected (e.g. ``"SPEECH"``)."""
        if self.type and self.type.lower() not in _GENERIC_ALERT_TYPES:
            return self.type
        return self.event or self.label or self.type or UNKNOWN_ALERT_KIND


class StoreStatusInfo(WireModel):
    """``devices/<id>/status/info`` node."""

    last_rms: int = 0
    last_zcr: float = 0.0
    alarm_state: str | None = None

    @field_validator("last_rms", mode="before")
    @classmethod
    def _coerce_rms(cls, value: Any) -> int:
        return int_or_zero(value)

    @field_validator("last_zcr", mode="before")
    @classmethod
    def _coerce_zcr(cls, value: Any) -> float:
        return float_or_zero(value)

    @field_validator("alarm_state", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)


class StoreStatusSnapshot(WireModel):
    """``devices/<id>/status`` node."""

    timestamp: EpochTimestamp = None
    status: str | None = None
    type: str | None = None
    message: str | None = None
    info: StoreStatusInfo = Field(default_factory=StoreStatusInfo)

    @field_validator("status", "type", "message", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("info", mode="before")
    @classmethod
    def _coerce_info(cls, value: Any) -> dict[str, Any]:
        return mapping_or_empty(value)


class StoreDeviceInfo(WireModel):
    """``devices/<id>/info`` node (user-editable metadata)."""

    device_name: str | None = None
    floor: str | None = None
    zone: str | None = None
    description: str | None = None
    updated_at: EpochTimestamp = None

    @field_validator("device_name", "floor", "zone", "description", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @property
    def has_location(self) -> bool:
        return any(part is not None for part in (self.floor, self.zone, self.description))


class StoreMessage(WireModel):
    """One child of ``devices/<id>/messages`` (alerts and calibration results)."""

    device_id: str | None = None
    timestamp: EpochTimestamp = None
    type: str | None = None
    label: str | None = None
    rms: int = 0
    zcr: float = 0.0

    @field_validator("device_id", "type", "label", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str | None:
        return safe_str(value)

    @field_validator("rms", mode="before")
    @classmethod
    def _coerce_rms(cls, value: Any) -> int:
        return int_or_zero(value)

    @field_validator("zcr", mode="before")
    @classmethod
    def _coerce_zcr(cls, value: Any) -> float:
        return float_or_zero(value)

    @property
    def is_alert(self) -> bool:
        return self.type == "alert" or "label" in self.raw

    @property
    def alert_kind(self) -> str:
        return self.label or UNKNOWN_ALERT_KIND
