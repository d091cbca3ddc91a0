"""HTTP transport for a Firebase-style realtime store REST API."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import aiohttp

from pyloudness._constants import STORE_COMMANDS, STORE_INFO, store_path
from pyloudness.commands import CommandPayload
from pyloudness.exceptions import TransportUnavailableError
from pyloudness.models.device import DeviceRecord

_logger = logging.getLogger(__name__)


class StoreTransport(Protocol):
    """Structural transport interface used by the store poller.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`RealtimeStoreTransport`) concrete.
    """

    @property
    def is_available(self) -> bool:
        ...

    async def get(self, path: str, *, shallow: bool = False) -> Any:
        ...


class RealtimeStoreTransport:
    """REST client for ``<base_url>/<path>.json`` resources.

    Every failure (network error, non-2xx status, undecodable body) raises
    :class:`TransportUnavailableError` and flips :attr:`is_available` to
    ``False`` until the next successful request.
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        auth: str | None = None,
        on_availability_changed: Callable[[bool], None] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._auth = auth
        self._on_availability_changed = on_availability_changed
        self._available = False

    @property
    def is_available(self) -> bool:
        return self._available

    def _set_available(self, available: bool) -> None:
        if available == self._available:
            return
        self._available = available
        _logger.debug("Realtime store availability changed: %s", available)
        if self._on_availability_changed is not None:
            try:
                self._on_availability_changed(available)
            except Exception:
                _logger.debug("Availability callback failed", exc_info=True)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.strip('/')}.json"

    def _params(self, **extra: str) -> dict[str, str]:
        params = dict(extra)
        if self._auth:
            params["auth"] = self._auth
        return params

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, str] | None = None,
    ) -> Any:
        url = self._url(path)
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else None
        headers = {"content-type": "application/json; charset=UTF-8"} if body is not None else None

        _logger.debug("%s %s", method, url)

        try:
            async with self._http.request(method, url, data=body, params=params, headers=headers) as resp:
                text = await resp.text()
                if not 200 <= resp.status < 300:
                    raise TransportUnavailableError(
                        f"HTTP {resp.status} from {path}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=path,
                    )
        except TransportUnavailableError:
            self._set_available(False)
            raise
        except aiohttp.ClientError as exc:
            self._set_available(False)
            raise TransportUnavailableError(
                f"Request to {path} failed: {exc}",
                endpoint=path,
            ) from exc

        try:
            result = json.loads(text) if text.strip() else None
        except json.JSONDecodeError as exc:
            self._set_available(False)
            raise TransportUnavailableError(
                f"Invalid JSON from {path}: {text[:200]}",
                endpoint=path,
            ) from exc

        self._set_available(True)
        return result

    async def get(self, path: str, *, shallow: bool = False) -> Any:
        """Read the value at ``path``; ``None`` when nothing is stored there."""
        extra = {"shallow": "true"} if shallow else {}
        return await self._request("GET", path, params=self._params(**extra))

    async def push(self, path: str, payload: Mapping[str, Any]) -> str | None:
        """Append a child under ``path``; returns the generated key."""
        result = await self._request("POST", path, payload=payload, params=self._params())
        if isinstance(result, dict):
            name = result.get("name")
            return name if isinstance(name, str) else None
        return None

    async def patch(self, path: str, payload: Mapping[str, Any]) -> None:
        await self._request("PATCH", path, payload=payload, params=self._params())

    async def publish_command(self, device_id: str, payload: CommandPayload) -> None:
        key = await self.push(store_path(device_id, STORE_COMMANDS), payload.to_wire())
        _logger.debug("Queued command %s for %s key=%s", payload.action, device_id, key)

    async def write_device_info(self, record: DeviceRecord, *, updated_at_ms: int) -> None:
        """Write user-editable metadata back to ``devices/<id>/info``."""
        await self.patch(
            store_path(record.id, STORE_INFO),
            {
                "device_name": record.display_name,
                "floor": record.location.floor,
                "zone": record.location.zone,
                "description": record.location.description,
                "updated_at": updated_at_ms,
            },
        )
