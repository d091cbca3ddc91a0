"""Single entry point that turns raw transport payloads into events.

Both transports feed the same reconciliation engine; the ``source_kind``
discriminant picks the wire shape.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from pyloudness.exceptions import NormalizationError
from pyloudness.ingestion.mqtt import build_events_from_publish
from pyloudness.ingestion.realtime_store import build_events_from_snapshot
from pyloudness.state.events import Event, SourceKind


@dataclass(frozen=True)
class RawMessage:
    """A payload as handed over by a transport, tagged with where it arrived."""

    origin: str
    payload: Any


def normalize_all(
    source_kind: SourceKind,
    raw: RawMessage,
    *,
    received_at: datetime | None = None,
) -> list[Event]:
    """Normalize a raw payload that may carry several events.

    ``received_at`` stamps pub/sub readings and stands in for payloads
    without a usable timestamp.
    Raises :class:`NormalizationError` for structurally invalid input.
    """
    received = received_at or datetime.now(UTC)
    try:
        if source_kind == SourceKind.PUBSUB:
            return build_events_from_publish(origin=raw.origin, payload=raw.payload, received_at=received)
        if source_kind == SourceKind.REALTIME_STORE:
            return build_events_from_snapshot(origin=raw.origin, payload=raw.payload, received_at=received)
    except ValidationError as exc:
        # Event construction rejects e.g. a whitespace-only device id.
        raise NormalizationError(f"Invalid event from {raw.origin!r}: {exc}", origin=raw.origin) from exc
    raise NormalizationError(f"Unsupported source kind {source_kind!r}", origin=raw.origin)


def normalize(
    source_kind: SourceKind,
    raw: RawMessage,
    *,
    received_at: datetime | None = None,
) -> Event:
    """Normalize a raw payload into its primary event.

    The primary event is the telemetry of a status publish or snapshot, or
    the oldest alert of a history. Use :func:`normalize_all` to get the
    device-info and remaining alert events as well.
    """
    events = normalize_all(source_kind, raw, received_at=received_at)
    if not events:
        raise NormalizationError(f"Payload from {raw.origin!r} carries no events", origin=raw.origin)
    return events[0]
