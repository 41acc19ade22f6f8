from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Sequence

from packages.common.datetime_utils import timestamp_date

CANDLE_FIELDS = ("timestamp", "open", "high", "low", "close", "volume", "open_interest")


def _finite(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"bool is not a price or volume (got {value!r})")
    out = float(value)
    if not math.isfinite(out):
        raise ValueError(f"non-finite value {value!r}")
    return out


@dataclass(frozen=True)
class DateRange:
    from_date: date  # inclusive
    to_date: date    # inclusive

    def __str__(self) -> str:
        return f"{self.from_date.isoformat()}..{self.to_date.isoformat()}"


@dataclass(frozen=True)
class Candle:
    timestamp: str  # ISO8601, lexicographically sortable within one instrument
    open: float
    high: float
    low: float
    close: float
    volume: int
    open_interest: int

    @property
    def day(self) -> date:
        return timestamp_date(self.timestamp)

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "Candle":
        """
        Build from the upstream 7-tuple
        [timestamp, open, high, low, close, volume, open_interest]
        or from a stored CSV row of the same shape (all strings).
        Raises ValueError on anything malformed.
        """
        if not isinstance(row, (list, tuple)) or len(row) != len(CANDLE_FIELDS):
            raise ValueError(f"candle must have {len(CANDLE_FIELDS)} fields (got {row!r})")

        ts = row[0]
        if not isinstance(ts, str) or not ts.strip():
            raise ValueError(f"candle timestamp must be a non-empty string (got {ts!r})")
        ts = ts.strip()
        timestamp_date(ts)  # validates the date part

        try:
            o, h, l, c, v = (_finite(x) for x in row[1:6])
            oi = _finite(row[6]) if row[6] not in (None, "") else 0.0
            return cls(
                timestamp=ts,
                open=o,
                high=h,
                low=l,
                close=c,
                volume=int(v),
                open_interest=int(oi),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"malformed candle {row!r}: {e}") from e

    def to_row(self) -> list[Any]:
        return [
            self.timestamp,
            self.open,
            self.high,
            self.low,
            self.close,
            self.volume,
            self.open_interest,
        ]
