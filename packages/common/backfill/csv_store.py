from __future__ import annotations

import csv
import io
import os
import re
import tempfile
from datetime import date
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from loguru import logger

from packages.common.backfill.types import Candle
from packages.common.datetime_utils import timestamp_date

# Path separators plus the characters Windows refuses in file names.
_UNSAFE_CHARS_RE = re.compile(r'[|/\\:*?"<>]')


def sanitize_symbol(trading_symbol: str) -> str:
    s = _UNSAFE_CHARS_RE.sub("_", trading_symbol.strip())
    if not s or s in (".", ".."):
        raise ValueError(f"trading symbol cannot be mapped to a file name: {trading_symbol!r}")
    return s


def instrument_file(root: Path, trading_symbol: str, suffix: str = ".csv") -> Path:
    return Path(root) / f"{sanitize_symbol(trading_symbol)}{suffix}"


def read_candles(path: Path) -> List[Candle]:
    """
    Read a headerless candle CSV. Rows that fail validation are logged and
    skipped. Raises OSError if the file cannot be read.
    """
    out: List[Candle] = []
    with open(path, "r", newline="", encoding="utf-8") as f:
        for line_no, row in enumerate(csv.reader(f), start=1):
            if not row:
                continue
            try:
                out.append(Candle.from_row(row))
            except ValueError as e:
                logger.warning("Skipping corrupt row file={} line={}: {}", path, line_no, e)
    return out


def _render(candles: Iterable[Candle]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    for c in candles:
        writer.writerow(c.to_row())
    return buf.getvalue()


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


class CandleFileStore:
    """
    One headerless CSV per instrument, always deduplicated by timestamp and
    sorted ascending after a successful write.

    Rows: timestamp,open,high,low,close,volume,open_interest
    """

    def resolve_resume_point(self, path: Path, default_start: date) -> date:
        """
        Date to (re-)fetch from. This is the date of the newest stored
        candle itself, not the day after: that day may have been written
        while the session was still open.
        """
        path = Path(path)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.info("No local history file={} -> start {}", path, default_start)
            return default_start

        candles = read_candles(path)
        if not candles:
            logger.info("Empty history file={} -> start {}", path, default_start)
            return default_start

        last_ts = max(c.timestamp for c in candles)
        resume = timestamp_date(last_ts)
        logger.debug("History present file={} last_ts={} -> resume {}", path, last_ts, resume)
        return resume

    def merge(self, path: Path, new_records: Iterable[Candle], refetch_date: Optional[date] = None) -> int:
        """
        Union stored and new candles, dedup by timestamp (new wins), sort and
        rewrite the file in one replace. If refetch_date is given and the new
        batch has candles on that date, stored candles of that date are
        dropped first so the fresh set replaces a stale partial day.

        Returns the number of rows in the written file, 0 for a no-op.
        """
        path = Path(path)
        fresh: Dict[str, Candle] = {}
        for c in new_records:
            fresh[c.timestamp] = c
        if not fresh:
            return 0

        existing: List[Candle] = read_candles(path) if path.exists() else []

        replace_day = refetch_date is not None and any(c.day == refetch_date for c in fresh.values())

        merged: Dict[str, Candle] = {}
        for c in existing:
            if replace_day and c.day == refetch_date:
                continue
            merged[c.timestamp] = c
        merged.update(fresh)

        rows = [merged[ts] for ts in sorted(merged)]

        path.parent.mkdir(parents=True, exist_ok=True)
        _write_atomic(path, _render(rows))

        logger.info(
            "Saved file={} rows={} (existing={} fetched={})",
            path,
            len(rows),
            len(existing),
            len(fresh),
        )
        return len(rows)

    def safe_merge(self, path: Path, new_records: Iterable[Candle], refetch_date: Optional[date] = None) -> Optional[int]:
        """merge() with I/O errors logged and contained to this file. None on failure."""
        try:
            return self.merge(path, new_records, refetch_date=refetch_date)
        except OSError as e:
            logger.error("Save failed file={}: {}", path, e)
            return None
