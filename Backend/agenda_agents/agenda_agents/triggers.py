# agenda_agents/triggers.py
"""
Trigger arithmetic for the scheduled notification kinds.

Everything here is pure: callers pass "now" and the clinic timezone, and
get back aware instants. A trigger whose wall time already passed today is
fired immediately if it is still inside the grace window, otherwise the
next cycle is used.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, date, timedelta, tzinfo
from typing import Callable, Optional, Tuple

from .clock import at_local_time, local_date

SentCheck = Callable[[date], bool]


@dataclass(frozen=True)
class Trigger:
    instant: datetime
    day: date  # the calendar day the delivery belongs to
    immediate: bool = False


def _never_sent(_: date) -> bool:
    return False


def next_daily_trigger(
    now: datetime,
    hour: int,
    minute: int,
    tz: tzinfo,
    *,
    grace: timedelta,
    immediate_delay: timedelta,
    already_sent: Optional[SentCheck] = None,
) -> Optional[Trigger]:
    sent = already_sent or _never_sent
    today = local_date(now, tz)
    # start from yesterday so a trigger just before midnight still gets its grace window
    for offset in range(-1, 8):
        day = today + timedelta(days=offset)
        if sent(day):
            continue
        at = at_local_time(day, hour, minute, tz)
        if at > now:
            return Trigger(at, day)
        if now - at <= grace:
            return Trigger(now + immediate_delay, day, immediate=True)
    return None


def next_weekly_anchor(now: datetime, weekday: int, hour: int, minute: int, tz: tzinfo) -> datetime:
    """
    Next occurrence of ``weekday`` (Monday=0) at hour:minute strictly after ``now``.

    Anchor weekday today with the hour still ahead gives today; with the hour
    passed it rolls a full week.
    """
    today = local_date(now, tz)
    delta = (weekday - today.weekday()) % 7
    candidate = at_local_time(today + timedelta(days=delta), hour, minute, tz)
    if candidate <= now:
        candidate = at_local_time(today + timedelta(days=delta + 7), hour, minute, tz)
    return candidate


def next_weekly_trigger(
    now: datetime,
    weekday: int,
    hour: int,
    minute: int,
    tz: tzinfo,
    *,
    grace: timedelta,
    immediate_delay: timedelta,
    already_sent: Optional[SentCheck] = None,
) -> Trigger:
    sent = already_sent or _never_sent
    today = local_date(now, tz)

    last_day = today - timedelta(days=(today.weekday() - weekday) % 7)
    last = at_local_time(last_day, hour, minute, tz)
    if last <= now and now - last <= grace and not sent(last_day):
        return Trigger(now + immediate_delay, last_day, immediate=True)

    anchor = next_weekly_anchor(now, weekday, hour, minute, tz)
    day = local_date(anchor, tz)
    if sent(day):
        day = day + timedelta(days=7)
        anchor = at_local_time(day, hour, minute, tz)
    return Trigger(anchor, day)


def summary_window(anchor_day: date) -> Tuple[date, date]:
    """The seven days ending on the anchor, half-open."""
    return anchor_day - timedelta(days=6), anchor_day + timedelta(days=1)


def preview_window(anchor_day: date) -> Tuple[date, date]:
    """The seven days starting the day after the anchor, half-open."""
    return anchor_day + timedelta(days=1), anchor_day + timedelta(days=8)


def reminder_instant(start: datetime, offset_minutes: int) -> datetime:
    return start - timedelta(minutes=int(offset_minutes))


def _occurrence(birth: date, year: int) -> date:
    if birth.month == 2 and birth.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return date(year, birth.month, birth.day)


def next_birthday(birth: date, today: date) -> date:
    occ = _occurrence(birth, today.year)
    if occ < today:
        occ = _occurrence(birth, today.year + 1)
    return occ


def age_on(birth: date, occurrence: date) -> int:
    return occurrence.year - birth.year
