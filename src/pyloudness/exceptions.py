"""Custom exception hierarchy for pyloudness."""

from __future__ import annotations


class LoudnessError(Exception):
    """Base exception for all pyloudness errors."""


class LoudnessConfigError(LoudnessError):
    """Invalid or missing configuration."""


class NormalizationError(LoudnessError):
    """Inbound payload is malformed or of an unrecognized shape.

    These are dropped by the engine and never retried.
    """

    def __init__(self, message: str, *, origin: str = "") -> None:
        self.origin = origin
        super().__init__(message)


class TransportUnavailableError(LoudnessError):
    """Broker or realtime store could not be reached (network, non-2xx, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PersistenceError(LoudnessError):
    """Snapshot could not be read from or written to storage.

    The gateway logs these; the next registry mutation schedules a fresh save.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        self.key = key
        super().__init__(message)
