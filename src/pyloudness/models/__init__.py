"""Typed models for device state, alerts and inbound wire payloads."""

from pyloudness.models._base import EpochTimestamp, parse_epoch_timestamp, to_epoch_ms
from pyloudness.models.alert import AlertNotification
from pyloudness.models.device import CalibrationStatus, DeviceLocation, DeviceRecord
from pyloudness.models.messages import (
    PubSubMessage,
    StoreDeviceInfo,
    StoreMessage,
    StoreStatusInfo,
    StoreStatusSnapshot,
)

__all__ = [
    "AlertNotification",
    "CalibrationStatus",
    "CalibrationStatus",
    "DeviceLocation",
    "DeviceRecord",
    "EpochTimestamp",
    "PubSubMessage",
    "StoreDeviceInfo",
    "StoreMessage",
    "StoreStatusInfo",
    "StoreStatusSnapshot",
    "parse_epoch_timestamp",
    "to_epoch_ms",
]
