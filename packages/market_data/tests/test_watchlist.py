# packages/market_data/tests/test_watchlist.py

from __future__ import annotations

import pytest

from packages.common.types import Instrument
from packages.market_data.watchlist import derivative_symbol, load_watchlist_csv, trading_symbol_for


def test_equity_symbol_gets_exchange_suffix():
    row = {"segment": "NSE_EQ", "trading_symbol": " RELIANCE ", "exchange": "NSE"}
    assert trading_symbol_for(row) == "RELIANCE_NSE"


def test_index_uses_name():
    assert trading_symbol_for({"instrument_type": "INDEX", "name": " Nifty 50 ", "segment": "NSE_INDEX"}) == "Nifty 50"


def test_option_and_future_symbols():
    opt = {
        "segment": "NSE_FO",
        "instrument_type": "CE",
        "name": "NIFTY",
        "expiry": "2024-03-28",
        "strike_price": "22000.0",
    }
    assert trading_symbol_for(opt) == "NIFTY24032822000CE"

    fut = {"segment": "MCX_FO", "instrument_type": "FUT", "name": "CRUDEOIL", "expiry": "2024-04-19"}
    assert trading_symbol_for(fut) == "CRUDEOIL2404190FF"

    assert derivative_symbol("BANKNIFTY", "2024-03-27", 46500.5, "PE") == "BANKNIFTY24032746500.5PE"


def test_expiry_is_read_in_exchange_time():
    # 2024-03-28 00:00 IST, i.e. 2024-03-27T18:30Z
    assert derivative_symbol("NIFTY", 1711564200000, 22000, "CE") == "NIFTY24032822000CE"
    assert derivative_symbol("NIFTY", "1711564200000", 22000, "CE") == "NIFTY24032822000CE"
    assert derivative_symbol("NIFTY", "2024-03-27T18:30:00.000Z", 22000, "CE") == "NIFTY24032822000CE"
    assert derivative_symbol("NIFTY", "2024-03-28T00:00:00+05:30", 22000, "CE") == "NIFTY24032822000CE"
    assert derivative_symbol("NIFTY", "2024-03-28T00:00:00", 22000, "CE") == "NIFTY24032822000CE"

    opt = {
        "segment": "NSE_FO",
        "instrument_type": "CE",
        "name": "NIFTY",
        "expiry": 1711564200000,
        "strike_price": 22000,
    }
    assert trading_symbol_for(opt) == "NIFTY24032822000CE"


def test_option_without_strike_or_expiry_is_none():
    assert trading_symbol_for({"segment": "NSE_FO", "instrument_type": "PE", "name": "NIFTY", "expiry": "2024-03-28"}) is None
    assert trading_symbol_for({"segment": "NSE_FO", "instrument_type": "FUT", "name": "NIFTY"}) is None


def test_other_segments_strip_whitespace():
    assert trading_symbol_for({"segment": "NSE_COM", "trading_symbol": "GOLD MINI"}) == "GOLDMINI"


def test_load_watchlist_csv(tmp_path):
    p = tmp_path / "watchlist.csv"
    p.write_text(
        "instrument_key,trading_symbol,segment,exchange,instrument_type,name,expiry,strike_price\n"
        "NSE_EQ|INE002A01018,RELIANCE,NSE_EQ,NSE,EQ,RELIANCE,,\n"
        "NSE_FO|53137,,NSE_FO,NSE,CE,NIFTY,2024-03-28,22000\n"
        ",ORPHAN,NSE_EQ,NSE,EQ,ORPHAN,,\n"
        "NSE_EQ|INE002A01018,RELIANCE,NSE_EQ,NSE,EQ,RELIANCE,,\n"
        "NSE_FO|99999,,NSE_FO,NSE,CE,NIFTY,,\n"
    )
    assert load_watchlist_csv(p) == [
        Instrument("NSE_EQ|INE002A01018", "RELIANCE_NSE"),
        Instrument("NSE_FO|53137", "NIFTY24032822000CE"),
    ]


def test_load_plain_export(tmp_path):
    p = tmp_path / "watchlist.csv"
    p.write_text("instrument_key,trading_symbol\nNSE_EQ|1594371,INFY-EQ\n")
    assert load_watchlist_csv(p) == [Instrument("NSE_EQ|1594371", "INFY-EQ")]


def test_load_watchlist_requires_key_column(tmp_path):
    p = tmp_path / "watchlist.csv"
    p.write_text("symbol\nINFY\n")
    with pytest.raises(ValueError):
        load_watchlist_csv(p)
    with pytest.raises(FileNotFoundError):
        load_watchlist_csv(tmp_path / "missing.csv")
