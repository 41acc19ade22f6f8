from __future__ import annotations

from datetime import date, timedelta
from typing import List

from packages.common.backfill.types import DateRange
from packages.common.constants import MINUTE_MAX_SPAN_DAYS
from packages.common.datetime_utils import adjust_end_to_weekday, adjust_start_to_weekday


def chunk_date_range(start: date, end: date, max_span_days: int = MINUTE_MAX_SPAN_DAYS) -> List[DateRange]:
    """
    Split [start, end] into request windows that begin and end on weekdays.

    Each window ends at min(start + max_span_days, end), pulled back off a
    weekend; the next one starts the day after, pushed forward off a weekend.
    An empty list means there is nothing to fetch.
    """
    if max_span_days < 1:
        raise ValueError(f"max_span_days must be >= 1 (got {max_span_days})")

    start = adjust_start_to_weekday(start)
    end = adjust_end_to_weekday(end)
    if start > end:
        return []

    span = timedelta(days=max_span_days)
    out: List[DateRange] = []
    cursor = start

    while cursor <= end:
        chunk_end = adjust_end_to_weekday(min(cursor + span, end))
        out.append(DateRange(from_date=cursor, to_date=chunk_end))
        cursor = adjust_start_to_weekday(chunk_end + timedelta(days=1))

    return out
