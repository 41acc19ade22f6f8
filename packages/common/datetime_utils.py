from __future__ import annotations

from datetime import date, datetime, timedelta

SATURDAY = 5
SUNDAY = 6


def parse_iso_date(s: str) -> date:
    """
    Accepts a calendar date ("2023-01-02") or a full ISO8601 timestamp
    ("2023-01-02T09:15:00+05:30") and returns the calendar date part.
    """
    ss = s.strip()
    if not ss:
        raise ValueError("empty date string")
    return date.fromisoformat(ss[:10])


def timestamp_date(ts: str) -> date:
    """Calendar date of a candle timestamp, in the exchange's own offset."""
    return parse_iso_date(ts)


def adjust_start_to_weekday(d: date) -> date:
    wd = d.weekday()
    if wd == SATURDAY:
        return d + timedelta(days=2)
    if wd == SUNDAY:
        return d + timedelta(days=1)
    return d


def adjust_end_to_weekday(d: date) -> date:
    wd = d.weekday()
    if wd == SATURDAY:
        return d - timedelta(days=1)
    if wd == SUNDAY:
        return d - timedelta(days=2)
    return d


def today_local() -> date:
    return datetime.now().date()
