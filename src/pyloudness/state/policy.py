"""Deterministic reconciliation policy.

This module intentionally contains *no* payload parsing. The ingestion
boundary produces normalized events and timestamps; these predicates only
compare them.
"""

from __future__ import annotations

from datetime import datetime, timedelta


def should_accept_observation(cached_at: datetime | None, incoming_at: datetime) -> bool:
    """Observation timestamps never move backwards.

    Equal timestamps are accepted so a re-delivered reading is idempotent.
    """
    if cached_at is None:
        return True
    return incoming_at >= cached_at


def is_stale(now: datetime, last_seen_at: datetime | None, offline_timeout: timedelta) -> bool:
    """Whether a device last seen at ``last_seen_at`` is past the offline timeout."""
    if last_seen_at is None:
        return True
    return now - last_seen_at > offline_timeout


def is_within_cooldown(now: datetime, last_accepted_at: datetime | None, cooldown: timedelta) -> bool:
    if last_accepted_at is None:
        return False
    return now - last_accepted_at < cooldown
