"""Time boundaries of an attempt.

All datetimes are naive UTC, matching what the database stores.
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Optional

from exam_portal.config import settings
from exam_portal.errors import TimeExpired


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def attempt_deadline(started_at: datetime, duration_minutes: int) -> datetime:
    return started_at + timedelta(minutes=duration_minutes)


def remaining_seconds(
    started_at: datetime, duration_minutes: int, now: Optional[datetime] = None
) -> int:
    """Whole seconds left before the exam duration runs out (never negative)."""
    now = now or utcnow()
    left = (attempt_deadline(started_at, duration_minutes) - now).total_seconds()
    return max(0, math.floor(left))


def is_expired(
    started_at: datetime,
    duration_minutes: int,
    now: Optional[datetime] = None,
    grace_seconds: Optional[int] = None,
) -> bool:
    """True once the duration plus the grace period has fully elapsed."""
    now = now or utcnow()
    if grace_seconds is None:
        grace_seconds = settings.ANSWER_GRACE_SECONDS
    cutoff = attempt_deadline(started_at, duration_minutes) + timedelta(seconds=grace_seconds)
    return now > cutoff


def ensure_not_expired(
    started_at: datetime, duration_minutes: int, now: Optional[datetime] = None
) -> None:
    if is_expired(started_at, duration_minutes, now):
        raise TimeExpired()
