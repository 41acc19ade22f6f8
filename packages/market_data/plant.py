from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Union

from loguru import logger

from packages.common.backfill.service import BackfillOrchestrator, BackfillReport, TransportFactory
from packages.common.config import BackfillConfig, FetcherConfig
from packages.common.types import Instrument
from packages.market_data.types import BackfillOptions

InstrumentLike = Union[Instrument, Mapping[str, str]]


def _as_instrument(x: InstrumentLike) -> Instrument:
    if isinstance(x, Instrument):
        return x
    key = str(x.get("instrument_key") or "").strip()
    symbol = str(x.get("trading_symbol") or "").strip()
    if not key or not symbol:
        raise ValueError(f"instrument needs instrument_key and trading_symbol (got {dict(x)!r})")
    return Instrument(instrument_key=key, trading_symbol=symbol)


def apply_options(cfg: BackfillConfig, options: Optional[BackfillOptions]) -> BackfillConfig:
    if options is None:
        return cfg
    overrides = {
        k: v
        for k, v in (
            ("concurrent_requests", options.concurrent_requests),
            ("client_refresh_threshold", options.client_refresh_threshold),
            ("max_retries", options.max_retries),
        )
        if v is not None
    }
    if not overrides:
        return cfg
    # Re-validate so bad overrides fail the same way bad YAML does
    fetcher = FetcherConfig.model_validate({**cfg.fetcher.model_dump(), **overrides})
    return cfg.model_copy(update={"fetcher": fetcher})


class MarketDataPlant:
    """
    Single owner of the local candle history: the host hands it the active
    watchlist (after export, and once more on shutdown) and awaits it.
    """

    def __init__(
        self,
        cfg: Optional[BackfillConfig] = None,
        *,
        transport_factory: Optional[TransportFactory] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.cfg = cfg or BackfillConfig()
        self._transport_factory = transport_factory
        self._today = today

    async def backfill(
        self,
        instruments: Iterable[InstrumentLike],
        root_path: Union[str, Path, None] = None,
        options: Optional[BackfillOptions] = None,
    ) -> BackfillReport:
        cfg = apply_options(self.cfg, options)
        root = Path(root_path) if root_path is not None else Path(cfg.data.root_path)

        items = [_as_instrument(x) for x in instruments]
        orchestrator = BackfillOrchestrator(
            cfg,
            transport_factory=self._transport_factory,
            today=self._today,
        )
        report = await orchestrator.run(items, root)
        if report.fetch_failures or report.save_errors:
            logger.warning(
                "Backfill finished with gaps fetch_failures={} save_errors={} (retried next run)",
                report.fetch_failures,
                report.save_errors,
            )
        return report


async def backfill(
    instruments: Iterable[InstrumentLike],
    root_path: Union[str, Path],
    options: Optional[BackfillOptions] = None,
    *,
    cfg: Optional[BackfillConfig] = None,
    transport_factory: Optional[TransportFactory] = None,
    today: Optional[Callable[[], date]] = None,
) -> BackfillReport:
    """
    Bring every instrument's candle file under root_path up to date.

    Per-chunk and per-file failures are logged and left for the next run;
    this only raises when the root cannot be used or the config is invalid.
    """
    plant = MarketDataPlant(cfg, transport_factory=transport_factory, today=today)
    return await plant.backfill(instruments, root_path, options)
