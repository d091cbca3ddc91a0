"""Normalization helpers.

Centralizes lenient parsing and placeholder handling so a single garbled
field never discards an otherwise useful payload.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any

from pyloudness.exceptions import NormalizationError


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or value == "--":
        return None
    if isinstance(value, bool):
        return float(value)
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(parsed)


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text if text else None


def int_or_zero(value: Any) -> int:
    parsed = safe_int(value)
    return 0 if parsed is None else parsed


def float_or_zero(value: Any) -> float:
    parsed = safe_float(value)
    return 0.0 if parsed is None else parsed


def mapping_or_empty(value: Any) -> dict[str, Any]:
    """Nested objects that arrive as anything but a mapping count as absent."""
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def decode_json_object(payload: Any, *, origin: str = "") -> Any:
    """Decode a transport payload into a Python object.

    ``bytes``/``str`` are parsed as JSON; mappings and lists pass through.
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise NormalizationError(f"Payload from {origin!r} is not UTF-8", origin=origin) from exc
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise NormalizationError(f"Payload from {origin!r} is not JSON: {payload[:64]!r}", origin=origin) from exc
    if isinstance(payload, Mapping):
        return dict(payload)
    if isinstance(payload, list):
        return payload
    raise NormalizationError(f"Unsupported payload type {type(payload).__name__} from {origin!r}", origin=origin)


def split_origin(origin: str) -> list[str]:
    """Split a topic or store path into its non-empty segments."""
    return [segment for segment in origin.strip().split("/") if segment]


def device_id_from(payload: Mapping[str, Any], segments: list[str], *, origin: str) -> str:
    """Resolve the device id: payload body first, then the second path segment."""
    for key in ("device_id", "deviceId"):
        candidate = safe_str(payload.get(key))
        if candidate:
            return candidate
    if len(segments) >= 2:
        return segments[1]
    raise NormalizationError(f"No device id in payload or origin {origin!r}", origin=origin)
