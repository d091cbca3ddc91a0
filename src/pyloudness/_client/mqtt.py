"""Internal MQTT coordination for FleetClient.

Owns:
- starting/stopping the threaded MQTT runtime
- forwarding received publishes to the engine queue
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from pyloudness._mqtt import LoudnessMqttRuntime, MqttMessage
from pyloudness.config import FleetConfig
from pyloudness.engine import ReconciliationEngine
from pyloudness.ingestion.normalizer import RawMessage
from pyloudness.state.events import SourceKind


class MqttCoordinator:
    def __init__(
        self,
        *,
        config: FleetConfig,
        loop: asyncio.AbstractEventLoop,
        engine: ReconciliationEngine,
        on_connection_changed: Callable[[bool], None] | None = None,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._loop = loop
        self._engine = engine
        self._on_connection_changed = on_connection_changed
        self._logger = logger
        self._runtime: LoudnessMqttRuntime | None = None

    @property
    def runtime(self) -> LoudnessMqttRuntime | None:
        return self._runtime

    async def ensure_started(self) -> bool:
        """Start the runtime; failures are logged and reported as ``False``.

        An unreachable broker is not a failure here: the runtime keeps
        retrying in the background and reports availability through
        ``on_connection_changed``.
        """
        runtime = LoudnessMqttRuntime(
            config=self._config,
            loop=self._loop,
            on_message=self._on_message,
            on_connection_changed=self._on_connection_changed,
            logger=self._logger,
        )
        previous = self._runtime
        # Kept even when start fails so it still acts as an (unavailable) sink.
        self._runtime = runtime
        try:
            await self._loop.run_in_executor(None, runtime.start)
        except Exception as exc:
            self._logger.warning("MQTT runtime start failed: %s", exc)
            self._logger.debug("MQTT runtime start failure", exc_info=True)
            return False
        finally:
            if previous is not None:
                await self._loop.run_in_executor(None, previous.stop)
        return True

    async def stop(self) -> None:
        runtime = self._runtime
        self._runtime = None
        if runtime is None:
            return
        try:
            await self._loop.run_in_executor(None, runtime.stop)
        except Exception:
            self._logger.debug("MQTT runtime stop failed", exc_info=True)

    def _on_message(self, message: MqttMessage) -> None:
        self._engine.submit(SourceKind.PUBSUB, RawMessage(origin=message.topic, payload=message.payload))
