"""Realtime-store ingestion helpers.

Translates snapshots read under ``devices/<deviceId>`` into normalized
events. A snapshot may be the whole device node, one of its sections
(``status``, ``info``, ``messages``) or a single message child.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from pyloudness._constants import (
    PLACEHOLDER_FLOOR,
    PLACEHOLDER_ZONE,
    STORE_INFO,
    STORE_MESSAGES,
    STORE_ROOT,
    STORE_STATUS,
)
from pyloudness.exceptions import NormalizationError
from pyloudness.ingestion.normalize import decode_json_object, device_id_from, split_origin
from pyloudness.models._base import WireModel
from pyloudness.models.device import DeviceLocation
from pyloudness.models.messages import StoreDeviceInfo, StoreMessage, StoreStatusSnapshot
from pyloudness.state.events import AlertEvent, DeviceInfoEvent, Event, SourceKind, TelemetryEvent

TModel = TypeVar("TModel", bound=WireModel)


def _parse(model_cls: type[TModel], payload: Any, *, origin: str) -> TModel:
    if not isinstance(payload, Mapping):
        raise NormalizationError(f"Snapshot at {origin!r} is not an object", origin=origin)
    try:
        return model_cls.model_validate(dict(payload))
    except ValidationError as exc:
        raise NormalizationError(f"Invalid snapshot at {origin!r}: {exc}", origin=origin) from exc


def _status_event(payload: Any, segments: list[str], *, origin: str, received_at: datetime) -> TelemetryEvent:
    status = _parse(StoreStatusSnapshot, payload, origin=origin)
    return TelemetryEvent(
        device_id=device_id_from(status.raw, segments, origin=origin),
        source=SourceKind.REALTIME_STORE,
        rms=status.info.last_rms,
        zcr=status.info.last_zcr,
        observed_at=status.timestamp or received_at,
    )


def _info_event(payload: Any, segments: list[str], *, origin: str) -> DeviceInfoEvent:
    info = _parse(StoreDeviceInfo, payload, origin=origin)
    location: DeviceLocation | None = None
    if info.has_location:
        location = DeviceLocation(
            floor=info.floor or PLACEHOLDER_FLOOR,
            zone=info.zone or PLACEHOLDER_ZONE,
            description=info.description or "",
        )
    return DeviceInfoEvent(
        device_id=device_id_from(info.raw, segments, origin=origin),
        source=SourceKind.REALTIME_STORE,
        display_name=info.device_name,
        location=location,
    )


def _message_event(payload: Any, segments: list[str], *, origin: str, received_at: datetime) -> AlertEvent:
    message = _parse(StoreMessage, payload, origin=origin)
    if not message.is_alert:
        raise NormalizationError(f"Message at {origin!r} is not an alert (type={message.type!r})", origin=origin)
    return AlertEvent(
        device_id=device_id_from(message.raw, segments, origin=origin),
        source=SourceKind.REALTIME_STORE,
        kind=message.alert_kind,
        rms=message.rms,
        zcr=message.zcr,
        observed_at=message.timestamp or received_at,
    )


def _message_events(payload: Any, segments: list[str], *, origin: str, received_at: datetime) -> list[AlertEvent]:
    if not isinstance(payload, Mapping):
        raise NormalizationError(f"Messages at {origin!r} are not an object", origin=origin)
    alerts: list[AlertEvent] = []
    for key, child in payload.items():
        child_origin = f"{origin}/{key}"
        try:
            alerts.append(_message_event(child, segments, origin=child_origin, received_at=received_at))
        except NormalizationError:
            # Calibration results and other non-alert children share the node.
            continue
    alerts.sort(key=lambda event: event.observed_at)
    return alerts


def build_events_from_snapshot(*, origin: str, payload: Any, received_at: datetime) -> list[Event]:
    """Build events from a snapshot read at ``origin``.

    The whole device node yields telemetry, then info, then alerts oldest
    first, so a newly discovered device exists before it is named and is
    named before its alerts are formatted.
    """
    segments = split_origin(origin)
    if len(segments) < 2 or segments[0] != STORE_ROOT:
        raise NormalizationError(f"Path {origin!r} is not under {STORE_ROOT}/<deviceId>", origin=origin)
    decoded = decode_json_object(payload, origin=origin)
    section = segments[2] if len(segments) > 2 else None

    if section is None:
        if not isinstance(decoded, Mapping):
            raise NormalizationError(f"Device snapshot at {origin!r} is not an object", origin=origin)
        events: list[Event] = []
        if isinstance(decoded.get(STORE_STATUS), Mapping):
            events.append(
                _status_event(decoded[STORE_STATUS], segments, origin=f"{origin}/{STORE_STATUS}", received_at=received_at)
            )
        if isinstance(decoded.get(STORE_INFO), Mapping):
            events.append(_info_event(decoded[STORE_INFO], segments, origin=f"{origin}/{STORE_INFO}"))
        if isinstance(decoded.get(STORE_MESSAGES), Mapping):
            events.extend(
                _message_events(
                    decoded[STORE_MESSAGES], segments, origin=f"{origin}/{STORE_MESSAGES}", received_at=received_at
                )
            )
        return events

    if section == STORE_STATUS:
        return [_status_event(decoded, segments, origin=origin, received_at=received_at)]
    if section == STORE_INFO:
        return [_info_event(decoded, segments, origin=origin)]
    if section == STORE_MESSAGES:
        if len(segments) > 3:
            return [_message_event(decoded, segments, origin=origin, received_at=received_at)]
        return list(_message_events(decoded, segments, origin=origin, received_at=received_at))

    raise NormalizationError(f"Unrecognized store section {section!r} at {origin!r}", origin=origin)
