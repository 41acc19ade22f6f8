from __future__ import annotations

import re
from dataclasses import dataclass

from packages.common.constants import MINUTE_MAX_SPAN_DAYS

# "M" is months, "m" is minutes.
_INTERVAL_RE = re.compile(r"^(\d+)([mhdwM])$")

_UNITS = {
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
    "M": "months",
}

# Upstream caps the span of a single historical request per unit.
_MAX_SPAN_DAYS = {
    "minutes": MINUTE_MAX_SPAN_DAYS,
    "hours": 89,
    "days": 3650,
    "weeks": 3650,
    "months": 3650,
}

_MAX_MULTIPLIER = {
    "minutes": 300,
    "hours": 5,
    "days": 1,
    "weeks": 1,
    "months": 1,
}


@dataclass(frozen=True)
class Interval:
    unit: str          # upstream path segment, e.g. "minutes"
    multiplier: int    # e.g. 1 for 1-minute candles
    max_span_days: int

    def __str__(self) -> str:
        return f"{self.multiplier}{self.unit}"


def parse_interval(tf: str) -> Interval:
    m = _INTERVAL_RE.match(tf.strip())
    if not m:
        raise ValueError(f"Invalid interval: {tf!r} (expected e.g. '1m', '30m', '1h', '1d')")

    n = int(m.group(1))
    unit = _UNITS[m.group(2)]
    if n < 1 or n > _MAX_MULTIPLIER[unit]:
        raise ValueError(f"Unsupported interval {tf!r}: {unit} multiplier must be 1..{_MAX_MULTIPLIER[unit]}")

    return Interval(unit=unit, multiplier=n, max_span_days=_MAX_SPAN_DAYS[unit])
