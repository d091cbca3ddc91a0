from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from pyloudness.exceptions import NormalizationError
from pyloudness.ingestion.normalizer import RawMessage, normalize, normalize_all
from pyloudness.models._base import parse_epoch_timestamp
from pyloudness.models.device import DeviceLocation
from pyloudness.state.events import (
    AlertEvent,
    CalibrationEvent,
    DeviceInfoEvent,
    HeartbeatEvent,
    SourceKind,
    TelemetryEvent,
)


def _dt() -> datetime:
    return datetime(2026, 1, 1, tzinfo=UTC)


def _pubsub(origin: str, payload: object) -> RawMessage:
    if isinstance(payload, (dict, list)):
        payload = json.dumps(payload).encode()
    return RawMessage(origin=origin, payload=payload)


def test_status_publish_becomes_telemetry_stamped_on_arrival() -> None:
    event = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/esp32-001/status", {"rms": 42, "zcr": 0.12, "timestamp": 1767225540}),
        received_at=_dt(),
    )

    assert isinstance(event, TelemetryEvent)
    assert event.device_id == "esp32-001"
    assert event.source == SourceKind.PUBSUB
    assert event.rms == 42
    assert event.zcr == pytest.approx(0.12)
    assert event.observed_at == _dt()


def test_telemetry_topic_is_treated_like_status() -> None:
    event = normalize(SourceKind.PUBSUB, _pubsub("library/dev1/telemetry", {"rms": 7}), received_at=_dt())

    assert isinstance(event, TelemetryEvent)
    assert event.rms == 7


def test_missing_and_garbled_fields_default_leniently() -> None:
    event = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/status", {"rms": "loud", "zcr": "--"}),
        received_at=_dt(),
    )

    assert isinstance(event, TelemetryEvent)
    assert event.rms == 0
    assert event.zcr == 0.0
    assert event.observed_at == _dt()


def test_payload_device_id_wins_over_topic_segment() -> None:
    event = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/from-topic/status", {"deviceId": "from-body", "rms": 1}),
        received_at=_dt(),
    )

    assert event.device_id == "from-body"


def test_alert_kind_prefers_specific_type_then_event_then_label() -> None:
    specific = normalize(SourceKind.PUBSUB, _pubsub("library/dev1/alert", {"type": "SPEECH"}), received_at=_dt())
    generic = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/alert", {"type": "alert", "event": "DOOR_SLAM"}),
        received_at=_dt(),
    )
    labelled = normalize(SourceKind.PUBSUB, _pubsub("library/dev1/alert", {"label": "TALKING"}), received_at=_dt())
    unknown = normalize(SourceKind.PUBSUB, _pubsub("library/dev1/alert", {"rms": 3}), received_at=_dt())

    assert isinstance(specific, AlertEvent) and specific.kind == "SPEECH"
    assert isinstance(generic, AlertEvent) and generic.kind == "DOOR_SLAM"
    assert isinstance(labelled, AlertEvent) and labelled.kind == "TALKING"
    assert isinstance(unknown, AlertEvent) and unknown.kind == "UNKNOWN"


def test_alert_history_yields_alerts_oldest_first() -> None:
    events = normalize_all(
        SourceKind.PUBSUB,
        _pubsub(
            "library/dev1/alert_history",
            {
                "alerts": [
                    {"type": "SPEECH", "timestamp": 1767225660000},
                    {"type": "DOOR_SLAM", "timestamp": 1767225600000},
                ]
            },
        ),
        received_at=_dt(),
    )

    assert [event.kind for event in events if isinstance(event, AlertEvent)] == ["DOOR_SLAM", "SPEECH"]
    assert all(event.device_id == "dev1" for event in events)


def test_alert_history_accepts_bare_list() -> None:
    events = normalize_all(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/alert_history", [{"type": "SPEECH"}, "not-an-object"]),
        received_at=_dt(),
    )

    assert len(events) == 1


def test_status_with_name_and_location_also_yields_info() -> None:
    events = normalize_all(
        SourceKind.PUBSUB,
        _pubsub(
            "library/dev1/status",
            {"rms": 5, "device_name": "Reading Room", "location": {"floor": "2", "zone": "North"}},
        ),
        received_at=_dt(),
    )

    assert isinstance(events[0], TelemetryEvent)
    info = events[1]
    assert isinstance(info, DeviceInfoEvent)
    assert info.display_name == "Reading Room"
    assert info.location == DeviceLocation(floor="2", zone="North", description="")


def test_calibration_status_messages_carry_no_readings() -> None:
    progress = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/status", {"type": "calibration_progress", "progress": {"percentage": 150}}),
        received_at=_dt(),
    )
    complete = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/status", {"type": "calibration_complete", "calibration_complete": False}),
        received_at=_dt(),
    )

    assert isinstance(progress, CalibrationEvent)
    assert progress.in_progress is True
    assert progress.percentage == 100
    assert isinstance(complete, CalibrationEvent)
    assert complete.in_progress is False
    assert complete.succeeded is False


def test_device_info_status_becomes_heartbeat_and_info() -> None:
    events = normalize_all(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/status", {"type": "device_info", "device_name": "Lobby"}),
        received_at=_dt(),
    )

    assert [type(event) for event in events] == [HeartbeatEvent, DeviceInfoEvent]
    assert events[0].observed_at == _dt()


def test_only_live_alerts_carry_arrival_time() -> None:
    live = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/alert", {"type": "SPEECH", "timestamp": 1767225540}),
        received_at=_dt(),
    )
    history = normalize(
        SourceKind.PUBSUB,
        _pubsub("library/dev1/alert_history", [{"type": "SPEECH", "timestamp": 1767225540}]),
        received_at=_dt(),
    )

    assert isinstance(live, AlertEvent)
    assert live.received_at == _dt()
    assert live.observed_at == datetime(2025, 12, 31, 23, 59, tzinfo=UTC)
    assert isinstance(history, AlertEvent)
    assert history.received_at is None


@pytest.mark.parametrize(
    ("origin", "payload"),
    [
        ("library/dev1/status", b"\xff\xfe"),
        ("library/dev1/status", b"{not json"),
        ("library/dev1/status", b"[1, 2]"),
        ("library/dev1/unknown_kind", b"{}"),
        ("library/status", b"{}"),
        ("library/ /status", b"{}"),
    ],
)
def test_malformed_publishes_raise(origin: str, payload: bytes) -> None:
    with pytest.raises(NormalizationError):
        normalize(SourceKind.PUBSUB, RawMessage(origin=origin, payload=payload), received_at=_dt())


def test_store_status_snapshot_becomes_telemetry() -> None:
    event = normalize(
        SourceKind.REALTIME_STORE,
        RawMessage(
            origin="devices/esp32-007/status",
            payload={
                "timestamp": 1767225600000,
                "status": "online",
                "info": {"last_rms": 310, "last_zcr": 0.4, "alarm_state": "idle"},
            },
        ),
        received_at=_dt(),
    )

    assert isinstance(event, TelemetryEvent)
    assert event.device_id == "esp32-007"
    assert event.source == SourceKind.REALTIME_STORE
    assert event.rms == 310
    assert event.zcr == pytest.approx(0.4)


def test_store_info_fills_missing_location_parts() -> None:
    event = normalize(
        SourceKind.REALTIME_STORE,
        RawMessage(origin="devices/dev1/info", payload={"device_name": "Stacks", "zone": "East"}),
        received_at=_dt(),
    )

    assert isinstance(event, DeviceInfoEvent)
    assert event.display_name == "Stacks"
    assert event.location == DeviceLocation(floor="Unknown", zone="East", description="")


def test_store_info_without_location_leaves_it_unset() -> None:
    event = normalize(
        SourceKind.REALTIME_STORE,
        RawMessage(origin="devices/dev1/info", payload={"device_name": "Stacks"}),
        received_at=_dt(),
    )

    assert isinstance(event, DeviceInfoEvent)
    assert event.location is None


def test_store_message_with_label_is_an_alert() -> None:
    event = normalize(
        SourceKind.REALTIME_STORE,
        RawMessage(origin="devices/dev1/messages/-Nabc", payload={"label": "SPEECH", "rms": 900, "zcr": 0.2}),
        received_at=_dt(),
    )

    assert isinstance(event, AlertEvent)
    assert event.kind == "SPEECH"
    assert event.rms == 900


def test_store_non_alert_message_raises() -> None:
    with pytest.raises(NormalizationError):
        normalize(
            SourceKind.REALTIME_STORE,
            RawMessage(origin="devices/dev1/messages/-Ncal", payload={"type": "calibration", "rms": 10}),
            received_at=_dt(),
        )


def test_store_device_root_yields_telemetry_info_then_alerts() -> None:
    events = normalize_all(
        SourceKind.REALTIME_STORE,
        RawMessage(
            origin="devices/dev1",
            payload={
                "status": {"timestamp": 1767225600, "info": {"last_rms": 12}},
                "info": {"device_name": "Lobby"},
                "messages": {
                    "b": {"type": "alert", "label": "SPEECH", "timestamp": 1767225660},
                    "a": {"type": "alert", "label": "KNOCK", "timestamp": 1767225630},
                    "c": {"type": "calibration"},
                },
            },
        ),
        received_at=_dt(),
    )

    assert [type(event) for event in events] == [TelemetryEvent, DeviceInfoEvent, AlertEvent, AlertEvent]
    assert [event.kind for event in events if isinstance(event, AlertEvent)] == ["KNOCK", "SPEECH"]


def test_store_unknown_section_raises() -> None:
    with pytest.raises(NormalizationError):
        normalize(SourceKind.REALTIME_STORE, RawMessage(origin="devices/dev1/commands", payload={}), received_at=_dt())


def test_store_path_outside_devices_raises() -> None:
    with pytest.raises(NormalizationError):
        normalize(SourceKind.REALTIME_STORE, RawMessage(origin="other/dev1/status", payload={}), received_at=_dt())


def test_epoch_seconds_and_milliseconds_agree() -> None:
    assert parse_epoch_timestamp(1767225600) == parse_epoch_timestamp(1767225600000)
    assert parse_epoch_timestamp(0) is None
    assert parse_epoch_timestamp("garbage") is None
