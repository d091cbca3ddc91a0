"""Pub/sub ingestion helpers.

This module translates decoded MQTT publishes into normalized events.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from pyloudness._constants import (
    ALERT_HISTORY_TOPIC_KIND,
    ALERT_TOPIC_KIND,
    STATUS_CALIBRATION_COMPLETE,
    STATUS_CALIBRATION_PROGRESS,
    STATUS_DEVICE_INFO,
    TELEMETRY_TOPIC_KINDS,
)
from pyloudness.exceptions import NormalizationError
from pyloudness.ingestion.normalize import decode_json_object, device_id_from, split_origin
from pyloudness.models.device import DeviceLocation
from pyloudness.models.messages import PubSubMessage
from pyloudness.state.events import (
    AlertEvent,
    CalibrationEvent,
    DeviceInfoEvent,
    Event,
    HeartbeatEvent,
    SourceKind,
    TelemetryEvent,
)


def _parse_message(payload: Any, *, origin: str) -> PubSubMessage:
    if not isinstance(payload, Mapping):
        raise NormalizationError(f"Pub/sub payload on {origin!r} is not a JSON object", origin=origin)
    try:
        return PubSubMessage.model_validate(dict(payload))
    except ValidationError as exc:
        raise NormalizationError(f"Invalid pub/sub payload on {origin!r}: {exc}", origin=origin) from exc


def _history_entries(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("alerts", "history"):
            nested = payload.get(key)
            if isinstance(nested, list):
                return nested
        return [payload]
    return []


def _alert_event(message: PubSubMessage, device_id: str, received_at: datetime, *, live: bool) -> AlertEvent:
    return AlertEvent(
        device_id=device_id,
        source=SourceKind.PUBSUB,
        kind=message.alert_kind,
        rms=message.rms,
        zcr=message.zcr,
        observed_at=message.timestamp or received_at,
        received_at=received_at if live else None,
    )


def _info_event(message: PubSubMessage, device_id: str) -> DeviceInfoEvent | None:
    location: DeviceLocation | None = None
    if message.location:
        parts = {key: str(value) for key, value in message.location.items() if key in {"floor", "zone", "description"}}
        if parts:
            location = DeviceLocation(**parts)
    if message.device_name is None and location is None:
        return None
    return DeviceInfoEvent(
        device_id=device_id,
        source=SourceKind.PUBSUB,
        display_name=message.device_name,
        location=location,
    )


def _status_events(message: PubSubMessage, device_id: str, received_at: datetime) -> list[Event]:
    # Device clocks drift; liveness follows arrival time.
    events: list[Event]
    if message.type == STATUS_CALIBRATION_PROGRESS:
        events = [
            CalibrationEvent(
                device_id=device_id,
                source=SourceKind.PUBSUB,
                observed_at=received_at,
                in_progress=True,
                percentage=message.calibration_percentage,
            )
        ]
    elif message.type == STATUS_CALIBRATION_COMPLETE:
        events = [
            CalibrationEvent(
                device_id=device_id,
                source=SourceKind.PUBSUB,
                observed_at=received_at,
                in_progress=False,
                succeeded=bool(message.calibration_complete),
            )
        ]
    elif message.type == STATUS_DEVICE_INFO:
        events = [HeartbeatEvent(device_id=device_id, source=SourceKind.PUBSUB, observed_at=received_at)]
    else:
        events = [
            TelemetryEvent(
                device_id=device_id,
                source=SourceKind.PUBSUB,
                rms=message.rms,
                zcr=message.zcr,
                observed_at=received_at,
            )
        ]
    info = _info_event(message, device_id)
    if info is not None:
        events.append(info)
    return events


def build_events_from_publish(*, origin: str, payload: Any, received_at: datetime) -> list[Event]:
    """Build events from one publish on ``<namespace>/<deviceId>/<kind>``.

    ``status``/``telemetry`` yield a telemetry event, or a heartbeat or
    calibration event for ``device_info`` and ``calibration_*`` messages,
    followed by a device-info event when the message names or locates the
    device. ``alert`` yields one alert; ``alert_history`` yields one alert
    per history entry, oldest first.

    Readings and liveness are stamped with ``received_at``; the payload
    ``timestamp`` only dates alerts.
    """
    segments = split_origin(origin)
    if len(segments) < 3:
        raise NormalizationError(f"Topic {origin!r} is not <namespace>/<deviceId>/<kind>", origin=origin)
    kind = segments[-1]
    decoded = decode_json_object(payload, origin=origin)

    if kind in TELEMETRY_TOPIC_KINDS:
        message = _parse_message(decoded, origin=origin)
        device_id = device_id_from(message.raw, segments, origin=origin)
        return _status_events(message, device_id, received_at)

    if kind == ALERT_TOPIC_KIND:
        message = _parse_message(decoded, origin=origin)
        device_id = device_id_from(message.raw, segments, origin=origin)
        return [_alert_event(message, device_id, received_at, live=True)]

    if kind == ALERT_HISTORY_TOPIC_KIND:
        alerts: list[AlertEvent] = []
        for entry in _history_entries(decoded):
            if not isinstance(entry, Mapping):
                continue
            message = _parse_message(entry, origin=origin)
            device_id = device_id_from(message.raw, segments, origin=origin)
            alerts.append(_alert_event(message, device_id, received_at, live=False))
        alerts.sort(key=lambda event: event.observed_at)
        return list(alerts)

    raise NormalizationError(f"Unrecognized topic kind {kind!r} on {origin!r}", origin=origin)
