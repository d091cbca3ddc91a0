"""Client configuration for pyloudness."""

from __future__ import annotations

import dataclasses
import os
from enum import StrEnum
from typing import Any

from pyloudness._constants import (
    ALERT_COOLDOWN_S,
    ALERT_FEED_CAPACITY,
    DEFAULT_BROKER_HOST,
    DEFAULT_BROKER_PORT,
    DEFAULT_NAMESPACE,
    DEFAULT_STORAGE_KEY,
    OFFLINE_TIMEOUT_S,
    SWEEP_INTERVAL_S,
)
from pyloudness.exceptions import LoudnessConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


class TransportKind(StrEnum):
    MQTT = "mqtt"
    REALTIME_STORE = "realtime_store"
    NONE = "none"


@dataclasses.dataclass(frozen=True)
class FleetConfig:
    """Fleet engine and transport configuration.

    Parameters
    ----------
    transport : TransportKind
        Which inbound/outbound transport the client starts.
    namespace : str
        First topic segment for pub/sub (``<namespace>/<deviceId>/<kind>``).
    broker_host : str
        MQTT broker host name.
    broker_port : int
        MQTT broker port.
    mqtt_keepalive : int
        MQTT keepalive in seconds.
    mqtt_tls : bool
        Wrap the MQTT connection in TLS.
    mqtt_client_id : str or None
        MQTT client id. Generated when omitted.
    store_url : str or None
        Base URL of the realtime store REST API
        (e.g. ``https://<project>.firebaseio.com``).
    store_auth : str or None
        Auth token appended as ``?auth=`` to store requests.
    store_poll_interval : float
        Seconds between realtime-store polls.
    store_discover : bool
        Also poll the shallow device list so unseen devices are discovered.
    storage_path : str or None
        JSON file used for the persisted registry snapshot.
        ``None`` keeps the snapshot in memory only.
    storage_key : str
        Key under which the snapshot array is stored.
    offline_timeout : float
        Seconds without an event before a device is swept offline.
    sweep_interval : float
        Seconds between offline sweeps.
    alert_cooldown : float
        Minimum seconds between accepted alerts from the same device.
    alert_feed_capacity : int
        Number of notifications kept in the recent-alert feed.
    """

    transport: TransportKind = TransportKind.MQTT
    namespace: str = DEFAULT_NAMESPACE
    broker_host: str = DEFAULT_BROKER_HOST
    broker_port: int = DEFAULT_BROKER_PORT
    mqtt_keepalive: int = 60
    mqtt_tls: bool = False
    mqtt_client_id: str | None = None
    store_url: str | None = None
    store_auth: str | None = None
    store_poll_interval: float = 2.0
    store_discover: bool = True
    storage_path: str | None = None
    storage_key: str = DEFAULT_STORAGE_KEY
    offline_timeout: float = OFFLINE_TIMEOUT_S
    sweep_interval: float = SWEEP_INTERVAL_S
    alert_cooldown: float = ALERT_COOLDOWN_S
    alert_feed_capacity: int = ALERT_FEED_CAPACITY

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "transport", TransportKind(self.transport))
        except ValueError as exc:
            raise LoudnessConfigError(f"Unknown transport: {self.transport!r}") from exc
        if not self.namespace or "/" in self.namespace:
            raise LoudnessConfigError(f"Invalid namespace: {self.namespace!r}")
        if self.transport == TransportKind.REALTIME_STORE and not self.store_url:
            raise LoudnessConfigError("store_url is required for the realtime_store transport")
        for name in ("offline_timeout", "sweep_interval", "store_poll_interval"):
            if getattr(self, name) <= 0:
                raise LoudnessConfigError(f"{name} must be positive")
        if self.alert_cooldown < 0:
            raise LoudnessConfigError("alert_cooldown must not be negative")
        if self.alert_feed_capacity < 1:
            raise LoudnessConfigError("alert_feed_capacity must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> FleetConfig:
        """Create configuration from ``LOUDNESS_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "LOUDNESS_TRANSPORT": "transport",
            "LOUDNESS_NAMESPACE": "namespace",
            "LOUDNESS_BROKER_HOST": "broker_host",
            "LOUDNESS_MQTT_CLIENT_ID": "mqtt_client_id",
            "LOUDNESS_STORE_URL": "store_url",
            "LOUDNESS_STORE_AUTH": "store_auth",
            "LOUDNESS_STORAGE_PATH": "storage_path",
            "LOUDNESS_STORAGE_KEY": "storage_key",
        }
        _ENV_INT_MAP = {
            "LOUDNESS_BROKER_PORT": "broker_port",
            "LOUDNESS_MQTT_KEEPALIVE": "mqtt_keepalive",
            "LOUDNESS_ALERT_FEED_CAPACITY": "alert_feed_capacity",
        }
        _ENV_FLOAT_MAP = {
            "LOUDNESS_STORE_POLL_INTERVAL": "store_poll_interval",
            "LOUDNESS_OFFLINE_TIMEOUT": "offline_timeout",
            "LOUDNESS_SWEEP_INTERVAL": "sweep_interval",
            "LOUDNESS_ALERT_COOLDOWN": "alert_cooldown",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for mapping, convert in ((_ENV_INT_MAP, int), (_ENV_FLOAT_MAP, float)):
            for env_key, field_name in mapping.items():
                val = env.get(env_key)
                if val is None or field_name in overrides:
                    continue
                try:
                    config_kwargs[field_name] = convert(val)
                except ValueError as exc:
                    raise LoudnessConfigError(f"{env_key} is not a valid number: {val!r}") from exc

        if "mqtt_tls" not in overrides:
            config_kwargs["mqtt_tls"] = _env_bool(env.get("LOUDNESS_MQTT_TLS"), False)
        if "store_discover" not in overrides:
            config_kwargs["store_discover"] = _env_bool(env.get("LOUDNESS_STORE_DISCOVER"), True)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
