"""Bounded most-recent-first alert feed."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable

from pyloudness._constants import ALERT_FEED_CAPACITY
from pyloudness.models.alert import AlertNotification

_logger = logging.getLogger(__name__)

FeedListener = Callable[[AlertNotification], None]


class AlertFeed:
    """Recent alerts across all devices, newest first.

    Written only by the reconciliation engine. Once full, every push evicts
    the oldest notification.
    """

    def __init__(self, capacity: int = ALERT_FEED_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._items: deque[AlertNotification] = deque(maxlen=capacity)
        self._listeners: list[FeedListener] = []

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    def __len__(self) -> int:
        return len(self._items)

    def push(self, notification: AlertNotification) -> None:
        self._items.appendleft(notification)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                _logger.debug("Alert feed listener failed", exc_info=True)

    def recent(self) -> list[AlertNotification]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()

    def add_listener(self, listener: FeedListener) -> Callable[[], None]:
        """Register a callback for every pushed notification; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove
