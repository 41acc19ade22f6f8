from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger

from packages.common.config import load_backfill_config
from packages.market_data.plant import MarketDataPlant
from packages.market_data.types import BackfillOptions
from packages.market_data.watchlist import load_watchlist_csv


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Candle backfiller: bring local history for a watchlist up to date (safe to re-run)."
    )
    p.add_argument("watchlist", help="Exported watchlist CSV (needs an instrument_key column)")
    p.add_argument("--config", default="config/backfill.yaml", help="Backfill yaml path (optional file)")
    p.add_argument("--root", default=None, help="Candle files directory override")

    # Optional fetcher overrides (otherwise come from config)
    p.add_argument("--concurrency", type=int, default=None, help="Max requests in flight")
    p.add_argument("--refresh-threshold", type=int, default=None, help="Requests per session before rotating")
    p.add_argument("--max-retries", type=int, default=None, help="Retries for 5xx / transport errors")

    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    return p.parse_args(argv)


async def main_async(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level)

    cfg = load_backfill_config(Path(args.config))
    instruments = load_watchlist_csv(Path(args.watchlist))

    options = BackfillOptions(
        concurrent_requests=args.concurrency,
        client_refresh_threshold=args.refresh_threshold,
        max_retries=args.max_retries,
    )

    plant = MarketDataPlant(cfg)
    report = await plant.backfill(instruments, args.root, options)

    logger.info(
        "Backfiller complete files={} rows={} fetch_failures={} save_errors={}",
        report.files_written,
        report.rows_written,
        report.fetch_failures,
        report.save_errors,
    )
    return 0


def main() -> None:
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
