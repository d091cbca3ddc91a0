from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from pyloudness.models.alert import AlertNotification
from pyloudness.state.feed import AlertFeed


def _notification(index: int) -> AlertNotification:
    device_id = f"dev{index % 3}"
    return AlertNotification(
        device_id=device_id,
        kind="SPEECH",
        message=AlertNotification.format_message("SPEECH", device_id),
        rms=index,
        zcr=0.1,
        observed_at=datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=index),
    )


def test_eleven_pushes_keep_ten_newest_first() -> None:
    feed = AlertFeed()
    pushed = [_notification(index) for index in range(11)]
    for item in pushed:
        feed.push(item)

    recent = feed.recent()
    assert len(recent) == 10
    assert recent[0] == pushed[-1]
    assert pushed[0] not in recent
    assert [item.rms for item in recent] == list(range(10, 0, -1))


def test_listeners_see_every_push_until_unsubscribed() -> None:
    feed = AlertFeed(capacity=2)
    seen: list[AlertNotification] = []
    unsubscribe = feed.add_listener(seen.append)

    feed.push(_notification(1))
    unsubscribe()
    feed.push(_notification(2))

    assert [item.rms for item in seen] == [1]
    assert len(feed) == 2


def test_clear_empties_feed() -> None:
    feed = AlertFeed()
    feed.push(_notification(1))

    feed.clear()

    assert feed.recent() == []


def test_capacity_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AlertFeed(capacity=0)
