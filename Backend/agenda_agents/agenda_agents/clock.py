# agenda_agents/clock.py
from __future__ import annotations

from datetime import datetime, date, timedelta, timezone, tzinfo
from functools import lru_cache
from typing import Callable, Optional, Tuple

from zoneinfo import ZoneInfo

from .config import CLINIC_TZ

Clock = Callable[[], datetime]


@lru_cache(maxsize=8)
def clinic_tz(name: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(name or CLINIC_TZ)


def system_clock() -> datetime:
    return datetime.now(tz=timezone.utc)


def local_date(instant: datetime, tz: tzinfo) -> date:
    return instant.astimezone(tz).date()


def at_local_time(day: date, hour: int, minute: int, tz: tzinfo) -> datetime:
    """
    Aware instant for a clinic wall-clock time.

    Wall times that fall in a DST gap are pushed forward by the gap length;
    ambiguous wall times resolve to the first occurrence.
    """
    naive = datetime(day.year, day.month, day.day, hour, minute)
    local = naive.replace(tzinfo=tz, fold=0)
    # round-trip through UTC normalizes non-existent wall times
    return local.astimezone(timezone.utc).astimezone(tz)


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return at_local_time(day, 0, 0, tz)


def day_bounds(start_day: date, end_day: date, tz: tzinfo) -> Tuple[datetime, datetime]:
    """Half-open instant range [start_day 00:00, end_day 00:00) in clinic time."""
    return start_of_day(start_day, tz), start_of_day(end_day, tz)


def next_day(day: date) -> date:
    return day + timedelta(days=1)
