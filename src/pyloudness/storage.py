"""Key-value storage backends for the persisted registry snapshot."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Protocol

from pyloudness.exceptions import PersistenceError

_logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Structural storage interface used by the persistence gateway.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementations concrete.
    """

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...


class MemoryStorage:
    """Process-local storage; the snapshot is lost on exit."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStorage:
    """All keys in one JSON object file, replaced atomically on every write.

    File I/O runs in the default executor so the event loop never blocks on
    disk.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> dict[str, Any]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise PersistenceError(f"Cannot read {self._path}: {exc}") from exc
        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"{self._path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"{self._path} does not hold a JSON object")
        return data

    def _get_sync(self, key: str) -> str | None:
        with self._lock:
            value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def _set_sync(self, key: str, value: str) -> None:
        with self._lock:
            try:
                data = self._read_all()
            except PersistenceError as exc:
                if isinstance(exc.__cause__, OSError):
                    raise
                # Corrupt contents are overwritten; only I/O errors propagate.
                _logger.warning("Replacing unreadable storage file: %s", exc)
                data = {}
            data[key] = value
            tmp_name: str | None = None
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, separators=(",", ":"))
                os.replace(tmp_name, self._path)
            except OSError as exc:
                if tmp_name is not None:
                    with contextlib.suppress(OSError):
                        os.unlink(tmp_name)
                raise PersistenceError(f"Cannot write {self._path}: {exc}", key=key) from exc
        _logger.debug("Wrote key=%s to %s (%d bytes)", key, self._path, len(value))

    async def get(self, key: str) -> str | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_sync, key)

    async def set(self, key: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._set_sync, key, value)
