from datetime import datetime, timedelta

import pytest

from exam_portal.errors import TimeExpired
from exam_portal.timing import ensure_not_expired, is_expired, remaining_seconds

STARTED = datetime(2026, 3, 1, 9, 0, 0)


def test_remaining_seconds_counts_down_in_whole_seconds():
    assert remaining_seconds(STARTED, 30, now=STARTED) == 1800
    assert remaining_seconds(STARTED, 30, now=STARTED + timedelta(seconds=10.7)) == 1789
    assert remaining_seconds(STARTED, 30, now=STARTED + timedelta(minutes=29, seconds=59)) == 1


def test_remaining_seconds_never_negative():
    assert remaining_seconds(STARTED, 30, now=STARTED + timedelta(hours=2)) == 0


def test_remaining_seconds_is_non_increasing():
    polls = [remaining_seconds(STARTED, 30, now=STARTED + timedelta(seconds=s)) for s in range(0, 2000, 37)]
    assert polls == sorted(polls, reverse=True)


def test_grace_period_after_duration():
    end = STARTED + timedelta(minutes=30)
    assert not is_expired(STARTED, 30, now=end)
    assert not is_expired(STARTED, 30, now=end + timedelta(seconds=119))
    assert not is_expired(STARTED, 30, now=end + timedelta(seconds=120))
    assert is_expired(STARTED, 30, now=end + timedelta(seconds=121))


def test_grace_can_be_overridden():
    end = STARTED + timedelta(minutes=30)
    assert is_expired(STARTED, 30, now=end + timedelta(seconds=1), grace_seconds=0)


def test_ensure_not_expired_raises_time_expired():
    ensure_not_expired(STARTED, 30, now=STARTED + timedelta(minutes=31))
    with pytest.raises(TimeExpired):
        ensure_not_expired(STARTED, 30, now=STARTED + timedelta(minutes=32, seconds=1))
