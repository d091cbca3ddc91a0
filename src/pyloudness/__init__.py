"""pyloudness - Async fleet state engine for networked loudness detectors."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyloudness")
except PackageNotFoundError:
    __version__ = "0+local"
from pyloudness.client import FleetClient
from pyloudness.commands import CommandDispatcher, CommandPayload, CommandSink, DeviceCommand
from pyloudness.config import FleetConfig, TransportKind
from pyloudness.engine import ReconciliationEngine
from pyloudness.exceptions import (
    LoudnessConfigError,
    LoudnessError,
    NormalizationError,
    PersistenceError,
    TransportUnavailableError,
)
from pyloudness.ingestion.normalizer import RawMessage, normalize, normalize_all
from pyloudness.models import AlertNotification, CalibrationStatus, DeviceLocation, DeviceRecord
from pyloudness.persistence import PersistenceGateway
from pyloudness.state.events import (
    AlertEvent,
    CalibrationEvent,
    DeviceInfoEvent,
    Event,
    HeartbeatEvent,
    SourceKind,
    TelemetryEvent,
)
from pyloudness.state.feed import AlertFeed
from pyloudness.state.registry import ChangeKind, DeviceRegistry, RegistryChange
from pyloudness.storage import JsonFileStorage, KeyValueStorage, MemoryStorage

__all__ = [
    "__version__",
    "AlertEvent",
    "AlertFeed",
    "AlertNotification",
    "CalibrationEvent",
    "CalibrationStatus",
    "ChangeKind",
    "CommandDispatcher",
    "CommandPayload",
    "CommandSink",
    "DeviceCommand",
    "DeviceInfoEvent",
    "DeviceLocation",
    "DeviceRecord",
    "DeviceRegistry",
    "Event",
    "FleetClient",
    "FleetConfig",
    "HeartbeatEvent",
    "JsonFileStorage",
    "KeyValueStorage",
    "LoudnessConfigError",
    "LoudnessError",
    "MemoryStorage",
    "NormalizationError",
    "PersistenceError",
    "PersistenceGateway",
    "RawMessage",
    "ReconciliationEngine",
    "RegistryChange",
    "SourceKind",
    "TelemetryEvent",
    "TransportKind",
    "TransportUnavailableError",
    "normalize",
    "normalize_all",
]
