from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Instrument:
    instrument_key: str  # e.g. "NSE_EQ|INE002A01018"
    trading_symbol: str  # e.g. "RELIANCE_NSE"

    def __str__(self) -> str:
        return f"{self.trading_symbol} ({self.instrument_key})"
