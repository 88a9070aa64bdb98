"""Local-calendar helpers. Business dates are computed in the configured timezone."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def local_now(now: datetime, tz: str) -> datetime:
    return now.astimezone(ZoneInfo(tz))


def local_today(now: datetime, tz: str) -> date:
    return local_now(now, tz).date()


def at_local_hour(day: date, hour: int, tz: str) -> datetime:
    """``day`` at ``hour``:00 local time, as an aware UTC datetime."""
    local = datetime.combine(day, time(hour=hour), tzinfo=ZoneInfo(tz))
    return local.astimezone(timezone.utc)


def local_midnight(now: datetime, tz: str) -> datetime:
    return at_local_hour(local_today(now, tz), 0, tz)


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)
