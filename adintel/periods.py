from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def billing_period(now: Optional[datetime] = None) -> str:
    """Return the YYYY-MM billing period quota counters are kept in."""
    now = now or utcnow()
    return now.strftime("%Y-%m")


def month_reset_at(now: Optional[datetime] = None) -> datetime:
    """First instant (UTC) of the month after `now`, when monthly quota resets."""
    now = (now or utcnow()).astimezone(timezone.utc)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)
