"""Internal constants shared across the library."""

DEFAULT_NAMESPACE = "library"
DEFAULT_BROKER_HOST = "test.mosquitto.org"
DEFAULT_BROKER_PORT = 1883
DEFAULT_STORAGE_KEY = "devices"

# ------------------------------------------------------------------
# Fleet timing  (seconds)
# ------------------------------------------------------------------

OFFLINE_TIMEOUT_S = 30.0
SWEEP_INTERVAL_S = 10.0
ALERT_COOLDOWN_S = 5.0
ALERT_FEED_CAPACITY = 10

# ------------------------------------------------------------------
# Wire vocabulary
# ------------------------------------------------------------------

TELEMETRY_TOPIC_KINDS: frozenset[str] = frozenset({"telemetry", "status"})
ALERT_TOPIC_KIND = "alert"
ALERT_HISTORY_TOPIC_KIND = "alert_history"
COMMAND_TOPIC_KIND = "command"

# ``type`` values on the status topic that carry no readings.
STATUS_DEVICE_INFO = "device_info"
STATUS_CALIBRATION_PROGRESS = "calibration_progress"
STATUS_CALIBRATION_COMPLETE = "calibration_complete"
SUBSCRIBED_TOPIC_KINDS: tuple[str, ...] = ("telemetry", "status", "alert", "alert_history")

STORE_ROOT = "devices"
STORE_STATUS = "status"
STORE_INFO = "info"
STORE_MESSAGES = "messages"
STORE_COMMANDS = "commands"

UNKNOWN_ALERT_KIND = "UNKNOWN"
PLACEHOLDER_FLOOR = "Unknown"
PLACEHOLDER_ZONE = "Unknown"
AUTO_DISCOVERED_DESCRIPTION = "Auto-discovered"


def placeholder_name(device_id: str) -> str:
    """Display name given to a device nobody has named yet."""
    return f"Device {device_id[-3:]}"


def pubsub_topic(namespace: str, device_id: str, kind: str) -> str:
    return f"{namespace}/{device_id}/{kind}"


def store_path(device_id: str, *parts: str) -> str:
    return "/".join((STORE_ROOT, device_id, *parts))
