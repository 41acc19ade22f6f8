from __future__ import annotations

import asyncio
import os
import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from packages.adapters.base import BaseTransport
from packages.adapters.upstox.historical import (
    UpstoxTransport,
    historical_url,
    intraday_url,
    parse_candles,
)
from packages.common.backfill.chunker import chunk_date_range
from packages.common.backfill.csv_store import CandleFileStore, instrument_file
from packages.common.backfill.fetcher import RateLimitedFetcher, RateLimitedFetcherConfig
from packages.common.backfill.types import Candle, DateRange
from packages.common.config import BackfillConfig
from packages.common.datetime_utils import today_local
from packages.common.pool import run_all
from packages.common.timeframes import parse_interval
from packages.common.types import Instrument

TransportFactory = Callable[[], BaseTransport]

STAGE_PROBE = "probe"
STAGE_INTRADAY = "intraday"
STAGE_MAIN = "main"


@dataclass(frozen=True)
class InstrumentPlan:
    instrument: Instrument
    path: Path
    resume: date
    ranges: List[DateRange]

    @property
    def key(self) -> str:
        return self.instrument.instrument_key


@dataclass
class BackfillReport:
    instruments: int = 0
    planned: int = 0
    valid: int = 0
    requests: int = 0
    fetch_failures: int = 0
    files_written: int = 0
    rows_written: int = 0
    save_errors: int = 0
    stage_endpoints: Dict[str, List[str]] = field(default_factory=dict)


class BackfillOrchestrator:
    """
    Probe -> intraday -> main -> save, for one batch of instruments.

    Probe asks for only the newest chunk per instrument; instruments that
    return nothing skip the expensive main stage. Intraday runs for every
    instrument. Main fetches the remaining chunks of probed-valid
    instruments. Save merges everything collected, one file per instrument.
    """

    def __init__(
        self,
        cfg: BackfillConfig,
        *,
        transport_factory: Optional[TransportFactory] = None,
        store: Optional[CandleFileStore] = None,
        today: Optional[Callable[[], date]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.interval = parse_interval(cfg.history.interval)
        self._transport_factory = transport_factory or (lambda: UpstoxTransport(cfg.api))
        self._store = store or CandleFileStore()
        self._today = today or today_local
        self._sleep = sleep
        self._rng = rng

    def _fetcher_cfg(self) -> RateLimitedFetcherConfig:
        f = self.cfg.fetcher
        return RateLimitedFetcherConfig(
            concurrent_requests=f.concurrent_requests,
            client_refresh_threshold=f.client_refresh_threshold,
            max_retries=f.max_retries,
            rate_limit_backoff_min_s=f.rate_limit_backoff_min_s,
            rate_limit_backoff_max_s=f.rate_limit_backoff_max_s,
            handshake_pause_s=f.handshake_pause_s,
        )

    async def run(self, instruments: Sequence[Instrument], root: Path) -> BackfillReport:
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        if not os.access(root, os.W_OK):
            raise PermissionError(f"Backfill root is not writable: {root}")

        unique: Dict[str, Instrument] = {}
        for inst in instruments:
            unique.setdefault(inst.instrument_key, inst)

        report = BackfillReport(instruments=len(unique))
        if not unique:
            logger.info("Backfill: no instruments")
            return report

        end = self._today()
        logger.info(
            "Backfill starting instruments={} interval={} start={} end={} root={}",
            len(unique),
            self.interval,
            self.cfg.history.start_date,
            end,
            root,
        )

        plans = await self._plan(list(unique.values()), root, end)
        report.planned = len(plans)
        staged: Dict[str, List[Candle]] = defaultdict(list)

        # ---- 1) probe: newest chunk only
        probe_urls = {
            historical_url(self.cfg.api.base_url, p.key, self.interval, p.ranges[-1]): p.key
            for p in plans
            if p.ranges
        }
        probed = await self._fetch_stage(STAGE_PROBE, probe_urls, report)
        valid = {k for k, candles in probed.items() if candles}
        for k in valid:
            staged[k].extend(probed[k])
        report.valid = len(valid)
        logger.info("Probe stage: {}/{} instruments have data", len(valid), len(probe_urls))

        # ---- 2) intraday: every instrument
        intraday_urls = {intraday_url(self.cfg.api.base_url, p.key, self.interval): p.key for p in plans}
        for k, candles in (await self._fetch_stage(STAGE_INTRADAY, intraday_urls, report)).items():
            staged[k].extend(candles)

        # ---- 3) main: remaining chunks of valid instruments
        main_urls = {
            historical_url(self.cfg.api.base_url, p.key, self.interval, rng): p.key
            for p in plans
            if p.key in valid
            for rng in p.ranges[:-1]
        }
        for k, candles in (await self._fetch_stage(STAGE_MAIN, main_urls, report)).items():
            staged[k].extend(candles)

        # ---- 4) save
        await self._save(plans, staged, report)

        logger.info(
            "Backfill complete instruments={} valid={} requests={} fetch_failures={} files={} rows={} save_errors={}",
            report.instruments,
            report.valid,
            report.requests,
            report.fetch_failures,
            report.files_written,
            report.rows_written,
            report.save_errors,
        )
        return report

    async def _plan(self, instruments: List[Instrument], root: Path, end: date) -> List[InstrumentPlan]:
        default_start = self.cfg.history.start_date

        async def _one(inst: Instrument) -> InstrumentPlan:
            path = instrument_file(root, inst.trading_symbol)
            resume = await asyncio.to_thread(self._store.resolve_resume_point, path, default_start)
            ranges = chunk_date_range(resume, end, self.interval.max_span_days)
            if not ranges:
                logger.info("[{}] No new date ranges (resume={})", inst.trading_symbol, resume)
            return InstrumentPlan(instrument=inst, path=path, resume=resume, ranges=ranges)

        results = await run_all(self.cfg.data.save_concurrency, instruments, _one)

        plans: List[InstrumentPlan] = []
        owners: Dict[Path, str] = {}
        for inst, res in zip(instruments, results):
            if isinstance(res, (OSError, ValueError)):
                logger.error("[{}] Skipping instrument, cannot prepare history: {}", inst, res)
                continue
            if isinstance(res, BaseException):
                raise res
            # One file, one writer: first instrument mapped to a path keeps it.
            owner = owners.setdefault(res.path, inst.instrument_key)
            if owner != inst.instrument_key:
                logger.error(
                    "[{}] Skipping instrument, file {} already belongs to {}",
                    inst.instrument_key,
                    res.path,
                    owner,
                )
                continue
            plans.append(res)
        return plans

    async def _fetch_stage(self, stage: str, url_owner: Dict[str, str], report: BackfillReport) -> Dict[str, List[Candle]]:
        report.stage_endpoints[stage] = list(url_owner)
        if not url_owner:
            logger.info("Stage {}: nothing to fetch", stage)
            return {}

        logger.info("Stage {}: {} endpoints", stage, len(url_owner))
        transport = self._transport_factory()
        try:
            fetcher = RateLimitedFetcher(
                list(url_owner),
                transport,
                handshake_url=self.cfg.api.origin_url,
                cfg=self._fetcher_cfg(),
                sleep=self._sleep,
                rng=self._rng,
            )
            outcome = await fetcher.run()
        finally:
            await transport.close()

        report.requests += outcome.requests_issued
        report.fetch_failures += len(outcome.failures)
        for f in outcome.failures:
            logger.warning("Stage {} failed [{}] {} reason={}", stage, url_owner.get(f.url), f.url, f.reason)

        by_key: Dict[str, List[Candle]] = defaultdict(list)
        for s in outcome.successes:
            key = url_owner.get(s.url)
            if key is None:
                logger.warning("Stage {}: response for unknown url={}", stage, s.url)
                continue
            by_key[key].extend(parse_candles(s.data, s.url))
        return dict(by_key)

    async def _save(self, plans: List[InstrumentPlan], staged: Dict[str, List[Candle]], report: BackfillReport) -> None:
        to_save = [p for p in plans if staged.get(p.key)]
        if not to_save:
            logger.info("Save stage: nothing to write")
            return

        async def _one(p: InstrumentPlan) -> Optional[int]:
            return await asyncio.to_thread(self._store.safe_merge, p.path, staged[p.key], p.resume)

        results = await run_all(self.cfg.data.save_concurrency, to_save, _one)

        for p, res in zip(to_save, results):
            if isinstance(res, BaseException):
                logger.opt(exception=res).error("[{}] Save crashed", p.instrument)
                report.save_errors += 1
            elif res is None:
                report.save_errors += 1
            else:
                report.files_written += 1
                report.rows_written += res
