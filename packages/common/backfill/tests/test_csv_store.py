# packages/common/backfill/tests/test_csv_store.py

from __future__ import annotations

import random
from datetime import date
from pathlib import Path

import pytest

from packages.common.backfill.csv_store import (
    CandleFileStore,
    instrument_file,
    read_candles,
    sanitize_symbol,
)
from packages.common.backfill.types import Candle

DEFAULT_START = date(2023, 1, 1)


def _c(ts: str, close: float = 100.0, volume: int = 10) -> Candle:
    return Candle(timestamp=ts, open=100.0, high=101.0, low=99.0, close=close, volume=volume, open_interest=0)


def _ts(day: str, hhmm: str) -> str:
    return f"{day}T{hhmm}:00+05:30"


def _timestamps(path: Path) -> list[str]:
    return [c.timestamp for c in read_candles(path)]


def test_resume_point_missing_file_creates_parent(tmp_path):
    path = tmp_path / "nested" / "dir" / "X.csv"
    store = CandleFileStore()

    assert store.resolve_resume_point(path, DEFAULT_START) == DEFAULT_START
    assert path.parent.is_dir()
    assert not path.exists()


def test_resume_point_empty_file(tmp_path):
    path = tmp_path / "X.csv"
    path.write_text("")
    assert CandleFileStore().resolve_resume_point(path, DEFAULT_START) == DEFAULT_START


def test_resume_point_is_last_date_not_next_day(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    store.merge(path, [_c(_ts("2024-03-14", "15:29")), _c(_ts("2024-03-15", "09:15"))])

    assert store.resolve_resume_point(path, DEFAULT_START) == date(2024, 3, 15)


def test_merge_is_idempotent(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    batch = [_c(_ts("2024-01-02", "09:15")), _c(_ts("2024-01-02", "09:16")), _c(_ts("2024-01-03", "09:15"))]

    store.merge(path, batch, refetch_date=date(2024, 1, 2))
    once = path.read_bytes()
    store.merge(path, batch, refetch_date=date(2024, 1, 2))

    assert path.read_bytes() == once
    assert len(_timestamps(path)) == 3


def test_merge_sorts_and_dedups_any_input_order(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    days = [f"2024-02-{d:02d}" for d in range(1, 20)]
    stamps = [_ts(d, hm) for d in days for hm in ("09:15", "09:16", "15:29")]

    rnd = random.Random(3)
    for _ in range(4):
        batch = [_c(ts) for ts in rnd.sample(stamps, 20)]
        batch += batch[:5]  # duplicates inside one batch
        store.merge(path, batch)

        got = _timestamps(path)
        assert got == sorted(set(got))
        assert len(got) == len(set(got))


def test_new_records_win_ties(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    ts = _ts("2024-01-02", "09:15")
    store.merge(path, [_c(ts, close=1.0)])
    store.merge(path, [_c(ts, close=2.0)])

    assert [c.close for c in read_candles(path)] == [2.0]


def test_refetch_replaces_stale_partial_day(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    d = "2024-03-15"
    store.merge(
        path,
        [
            _c(_ts("2024-03-14", "15:29")),
            _c(_ts(d, "09:15"), close=1.0),
            _c(_ts(d, "09:16"), close=1.0),
            _c(_ts(d, "09:20"), close=1.0),  # stale row the fresh feed no longer has
        ],
    )

    resume = store.resolve_resume_point(path, DEFAULT_START)
    assert resume == date(2024, 3, 15)

    fresh = [_c(_ts(d, hm), close=2.0) for hm in ("09:15", "09:16", "09:17")]
    store.merge(path, fresh, refetch_date=resume)

    rows = read_candles(path)
    assert [c.timestamp for c in rows] == [
        _ts("2024-03-14", "15:29"),
        _ts(d, "09:15"),
        _ts(d, "09:16"),
        _ts(d, "09:17"),
    ]
    assert all(c.close == 2.0 for c in rows[1:])


def test_refetch_keeps_day_when_fetch_brought_nothing_for_it(tmp_path):
    path = tmp_path / "X.csv"
    store = CandleFileStore()
    store.merge(path, [_c(_ts("2024-03-15", "09:15"))])

    store.merge(path, [_c(_ts("2024-03-18", "09:15"))], refetch_date=date(2024, 3, 15))

    assert _timestamps(path) == [_ts("2024-03-15", "09:15"), _ts("2024-03-18", "09:15")]


def test_empty_merge_is_noop(tmp_path):
    path = tmp_path / "X.csv"
    assert CandleFileStore().merge(path, []) == 0
    assert not path.exists()


def test_file_is_headerless_csv(tmp_path):
    path = tmp_path / "X.csv"
    CandleFileStore().merge(path, [_c(_ts("2024-01-02", "09:15"), close=100.5, volume=1200)])
    assert path.read_text() == "2024-01-02T09:15:00+05:30,100.0,101.0,99.0,100.5,1200,0\n"


def test_corrupt_rows_are_skipped(tmp_path):
    path = tmp_path / "X.csv"
    path.write_text(
        "2024-01-02T09:15:00+05:30,1,2,0.5,1.5,100,0\n"
        "garbage\n"
        "2024-01-02T09:16:00+05:30,1,2,0.5,oops,100,0\n"
        "2024-01-02T09:17:00+05:30,1,2,0.5,1.5,100,0\n"
    )
    assert _timestamps(path) == ["2024-01-02T09:15:00+05:30", "2024-01-02T09:17:00+05:30"]


def test_write_failure_is_contained(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    store = CandleFileStore()

    assert store.safe_merge(blocker / "X.csv", [_c(_ts("2024-01-02", "09:15"))]) is None

    ok = tmp_path / "Y.csv"
    assert store.safe_merge(ok, [_c(_ts("2024-01-02", "09:15"))]) == 1
    assert not any(p.name.endswith(".tmp") for p in tmp_path.iterdir())


def test_sanitize_symbol():
    assert sanitize_symbol("NSE_EQ|INE002A01018") == "NSE_EQ_INE002A01018"
    assert sanitize_symbol("M&M/NSE") == "M&M_NSE"
    assert instrument_file(Path("/data"), "A|B").name == "A_B.csv"
    with pytest.raises(ValueError):
        sanitize_symbol("  ")
