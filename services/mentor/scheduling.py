"""
services/mentor/scheduling.py
Slot generation. Pure functions: they return (start, end) pairs in UTC and
leave persistence to the router.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Iterator, Optional


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def _steps(day: date, start: str, end: str, minutes: int) -> Iterator[tuple[datetime, datetime]]:
    """Consecutive `minutes`-long intervals inside [start, end) on `day`."""
    window_start = datetime.combine(day, parse_hhmm(start), tzinfo=timezone.utc)
    window_end = datetime.combine(day, parse_hhmm(end), tzinfo=timezone.utc)
    step = timedelta(minutes=minutes)
    cursor = window_start
    while cursor + step <= window_end:
        yield cursor, cursor + step
        cursor += step


def weekly_slots(
    windows: Iterable,
    slot_minutes: int,
    horizon_days: int,
    now: Optional[datetime] = None,
) -> list[tuple[datetime, datetime]]:
    """
    Expand weekly availability windows over the next `horizon_days`.
    `windows` holds objects with `weekday` (0 = Monday), `start` and `end`
    ("HH:MM", UTC). Intervals that have already started are skipped.
    """
    now = now or datetime.now(timezone.utc)
    windows = list(windows)
    slots: list[tuple[datetime, datetime]] = []
    for offset in range(horizon_days):
        day = now.date() + timedelta(days=offset)
        for window in windows:
            if window.weekday != day.weekday():
                continue
            slots.extend(
                (s, e) for s, e in _steps(day, window.start, window.end, slot_minutes) if s > now
            )
    return sorted(set(slots))


def slots_for_dates(
    dates: Iterable[date],
    start: str,
    end: str,
    slot_minutes: int,
    now: Optional[datetime] = None,
) -> list[tuple[datetime, datetime]]:
    """Same daily window on each of `dates`; past intervals are skipped."""
    now = now or datetime.now(timezone.utc)
    slots = {
        (s, e)
        for day in dates
        for s, e in _steps(day, start, end, slot_minutes)
        if s > now
    }
    return sorted(slots)
