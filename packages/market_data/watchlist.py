from __future__ import annotations

import csv
from datetime import date, datetime
from pathlib import Path
from typing import Any, List, Mapping, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from packages.common.types import Instrument

_EQUITY_SEGMENTS = {"NSE_EQ", "BSE_EQ"}
_DERIVATIVE_SEGMENTS = {"NSE_FO", "BSE_FO", "NCD_FO", "BCD_FO", "MCX_FO"}
EXCHANGE_TZ = ZoneInfo("Asia/Kolkata")


def _expiry_date(expiry: Any) -> date:
    # Catalog expiry is epoch ms; exported watchlists may carry ISO dates.
    # Expiries fall at midnight exchange time, so read the date there.
    if isinstance(expiry, (int, float)) or (isinstance(expiry, str) and expiry.strip().isdigit()):
        return datetime.fromtimestamp(int(expiry) / 1000, tz=EXCHANGE_TZ).date()

    s = str(expiry).strip()
    if len(s) == 10:
        return date.fromisoformat(s)
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.date()
    return dt.astimezone(EXCHANGE_TZ).date()


def _strike_str(strike: Any) -> str:
    v = float(strike)
    return str(int(v)) if v.is_integer() else str(v)


def derivative_symbol(underlying: str, expiry: Any, strike: Any, option_type: str) -> str:
    """NIFTY, 2024-03-28, 22000, CE -> NIFTY24032822000CE"""
    return f"{underlying}{_expiry_date(expiry).strftime('%y%m%d')}{_strike_str(strike)}{option_type}"


def trading_symbol_for(row: Mapping[str, Any]) -> Optional[str]:
    """
    Derive the charting symbol for a catalog/watchlist row.
    Returns None when the row does not carry enough to build one.
    """
    instrument_type = (row.get("instrument_type") or "").strip()
    name = (row.get("name") or "").strip()
    trading_symbol = (row.get("trading_symbol") or "").strip()
    segment = (row.get("segment") or "").strip()
    exchange = (row.get("exchange") or "").strip()

    if instrument_type == "INDEX":
        return name or None

    if segment in _EQUITY_SEGMENTS:
        if not trading_symbol:
            return None
        return f"{trading_symbol}_{exchange}" if exchange else trading_symbol

    if segment in _DERIVATIVE_SEGMENTS:
        expiry = row.get("expiry")
        if expiry in (None, "") or not name:
            return None
        try:
            if instrument_type in ("CE", "PE"):
                strike = row.get("strike_price")
                if strike in (None, ""):
                    return None
                return derivative_symbol(name, expiry, strike, instrument_type)
            if instrument_type == "FUT":
                return derivative_symbol(name, expiry, 0, "FF")
        except ValueError as e:
            logger.warning("Cannot derive symbol for {}: {}", row.get("instrument_key"), e)
            return None
        return None

    return "".join(trading_symbol.split()) or None


def load_watchlist_csv(path: Path) -> List[Instrument]:
    """
    Read an exported watchlist. Needs a header with instrument_key; the
    trading symbol is taken from trading_symbol or derived from the row.
    """
    if not path.exists():
        raise FileNotFoundError(f"Watchlist not found: {path}")

    out: List[Instrument] = []
    seen: set[str] = set()
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        if not reader.fieldnames or "instrument_key" not in reader.fieldnames:
            raise ValueError(f"Watchlist {path} has no instrument_key column")

        for row_num, row in enumerate(reader, start=2):  # header is line 1
            key = (row.get("instrument_key") or "").strip()
            if not key:
                logger.warning("Watchlist {} line {}: missing instrument_key - skipped", path, row_num)
                continue
            symbol = trading_symbol_for(row) if not _is_plain(row) else row["trading_symbol"].strip()
            if not symbol:
                logger.warning("Watchlist {} line {}: no trading symbol for {} - skipped", path, row_num, key)
                continue
            if key in seen:
                continue
            seen.add(key)
            out.append(Instrument(instrument_key=key, trading_symbol=symbol))

    logger.info("Loaded {} instruments from {}", len(out), path)
    return out


def _is_plain(row: Mapping[str, Any]) -> bool:
    # Export already carries the final symbol and no catalog fields to derive from.
    return bool((row.get("trading_symbol") or "").strip()) and not (row.get("segment") or "").strip()
