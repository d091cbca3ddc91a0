"""Base model and timestamp helpers for device wire payloads.

Every inbound wire model inherits from :class:`WireModel` which
provides:

* A ``model_validator(mode="before")`` that strips sentinel values
  (``""``, ``"--"``, NaN) so the field default is used.
* A ``raw`` dict that captures the original payload.
* ``extra="ignore"`` so firmware can add keys without breaking parsing.

Timestamps on the wire are epoch seconds from some firmware builds and
epoch milliseconds from others; :data:`EpochTimestamp` accepts both.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from pyloudness.ingestion.normalize import safe_float

_SENTINELS = frozenset({"", "--", "NaN", "nan", "null"})

# Threshold to distinguish seconds from milliseconds.
_MS_THRESHOLD = 1_000_000_000_000


def parse_epoch_timestamp(value: Any) -> datetime | None:
    """Convert an epoch timestamp (seconds **or** milliseconds) to a UTC datetime.

    Returns ``None`` for missing, non-numeric or non-positive values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    parsed = safe_float(value)
    if parsed is None or parsed <= 0:
        return None
    if parsed >= _MS_THRESHOLD:
        parsed /= 1000.0
    try:
        return datetime.fromtimestamp(parsed, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch_ms(value: datetime | None) -> int | None:
    """Inverse of :func:`parse_epoch_timestamp` used for persisted and outbound payloads."""
    if value is None:
        return None
    return int(round(value.timestamp() * 1000))


EpochTimestamp = Annotated[datetime | None, BeforeValidator(parse_epoch_timestamp)]
"""Annotated type that coerces epoch ints (seconds or ms) to UTC datetimes."""


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class WireModel(BaseModel):
    """Base for inbound device payload models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original payload dict."""

    @staticmethod
    def _clean_dict(values: dict[str, Any]) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        for key, value in values.items():
            if value is None:
                continue
            if isinstance(value, str) and value.strip() in _SENTINELS:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            cleaned[key] = value
        return cleaned

    @model_validator(mode="before")
    @classmethod
    def _clean_wire_values(cls, values: Any) -> Any:
        """Strip sentinel values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        original = dict(values)
        cleaned = WireModel._clean_dict(original)
        # Keep an explicitly passed raw= (construction from kwargs).
        if "raw" not in values:
            cleaned["raw"] = original
        return cleaned
