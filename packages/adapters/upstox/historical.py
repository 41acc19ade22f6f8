from __future__ import annotations

from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from loguru import logger

from packages.adapters.base import BaseTransport, HttpResponse
from packages.common.backfill.types import Candle, DateRange
from packages.common.config import ApiConfig
from packages.common.timeframes import Interval


def _key_segment(instrument_key: str) -> str:
    # "NSE_EQ|INE002A01018" -> "NSE_EQ%7CINE002A01018"
    return quote(instrument_key, safe="")


def historical_url(base_url: str, instrument_key: str, interval: Interval, rng: DateRange) -> str:
    # Upstream takes the window as .../{to}/{from}
    return (
        f"{base_url.rstrip('/')}/{_key_segment(instrument_key)}/{interval.unit}/{interval.multiplier}"
        f"/{rng.to_date.isoformat()}/{rng.from_date.isoformat()}"
    )


def intraday_url(base_url: str, instrument_key: str, interval: Interval) -> str:
    return f"{base_url.rstrip('/')}/intraday/{_key_segment(instrument_key)}/{interval.unit}/{interval.multiplier}"


def parse_candles(payload: Any, source: str = "") -> List[Candle]:
    """
    Extract data.candles from a response body. Malformed tuples are logged
    and skipped; a body without candles yields [].
    """
    if not isinstance(payload, dict):
        return []
    data = payload.get("data")
    if not isinstance(data, dict):
        return []
    raw = data.get("candles") or []
    if not isinstance(raw, list):
        logger.warning("Unexpected candles payload type={} url={}", type(raw).__name__, source)
        return []

    out: List[Candle] = []
    skipped = 0
    for row in raw:
        try:
            out.append(Candle.from_row(row))
        except ValueError as e:
            skipped += 1
            logger.debug("Malformed candle url={}: {}", source, e)
    if skipped:
        logger.warning("Skipped {} malformed candles url={}", skipped, source)
    return out


class UpstoxTransport(BaseTransport):
    def __init__(self, cfg: ApiConfig):
        self.cfg = cfg
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": self.cfg.user_agent}
        if self.cfg.access_token:
            headers["Authorization"] = f"Bearer {self.cfg.access_token}"
        return headers

    def _new_session(self) -> aiohttp.ClientSession:
        # Credential cookies from login are seeded into every fresh jar;
        # anything the server set during the old session is gone.
        jar = aiohttp.CookieJar()
        session = aiohttp.ClientSession(
            headers=self._headers(),
            cookie_jar=jar,
            timeout=aiohttp.ClientTimeout(total=self.cfg.request_timeout_s),
        )
        if self.cfg.cookies:
            jar.update_cookies(dict(self.cfg.cookies))
        return session

    async def get(self, url: str) -> HttpResponse:
        if self._session is None or self._session.closed:
            self._session = self._new_session()

        async with self._session.get(url) as resp:
            if resp.status != 200:
                await resp.release()
                return HttpResponse(status=resp.status)
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                logger.warning("Non-JSON body status={} url={}", resp.status, url)
                data = None
            return HttpResponse(status=resp.status, data=data)

    async def reset(self) -> None:
        await self.close()
        self._session = self._new_session()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
