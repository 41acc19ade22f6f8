from __future__ import annotations

from datetime import date

# Earliest date we backfill from when an instrument has no local history.
GLOBAL_START_DATE: date = date(2023, 1, 1)

# Base interval for the backfill. Minute data caps each request window.
BASE_INTERVAL: str = "1m"
MINUTE_MAX_SPAN_DAYS: int = 28

UPSTOX_ORIGIN_URL: str = "https://api.upstox.com"
UPSTOX_HISTORICAL_URL: str = "https://api.upstox.com/v3/historical-candle"

HANDSHAKE_FAILED_REASON: str = "initial handshake failed"
