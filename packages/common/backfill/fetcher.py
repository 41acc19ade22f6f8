from __future__ import annotations

import asyncio
import random
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence

import aiohttp
from loguru import logger

from packages.adapters.base import BaseTransport
from packages.common.constants import HANDSHAKE_FAILED_REASON


class FetcherState(str, Enum):
    INIT = "INIT"
    HANDSHAKE = "HANDSHAKE"
    RUNNING = "RUNNING"
    REFRESHING = "REFRESHING"
    DONE = "DONE"


@dataclass
class EndpointTask:
    url: str
    retry_count: int = 0


@dataclass(frozen=True)
class FetchSuccess:
    url: str
    data: Any


@dataclass(frozen=True)
class FetchFailure:
    url: str
    reason: str
    status: Optional[int] = None
    attempts: int = 0


@dataclass
class FetchOutcome:
    successes: List[FetchSuccess] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)
    requests_issued: int = 0
    refreshes: int = 0


class _Result(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    RETRY = "retry"
    FAILED = "failed"


@dataclass(frozen=True)
class RateLimitedFetcherConfig:
    concurrent_requests: int = 10
    client_refresh_threshold: int = 250
    max_retries: int = 3
    rate_limit_backoff_min_s: float = 2.0
    rate_limit_backoff_max_s: float = 4.0
    handshake_pause_s: float = 5.0


class RateLimitedFetcher:
    """
    Drains a queue of GET endpoints through one shared session, in batches of
    at most `concurrent_requests`.

      INIT -> HANDSHAKE -> (RUNNING <-> REFRESHING) -> DONE

    - 200: success
    - 429: requeue, retry count untouched, rotate the session after the batch
    - 5xx / transport error: requeue until retry_count exceeds max_retries
    - other 4xx: permanent failure
    - session is also rotated every `client_refresh_threshold` requests

    Results carry their URL; callers attribute by URL, never by position.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        transport: BaseTransport,
        *,
        handshake_url: str,
        cfg: RateLimitedFetcherConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.cfg = cfg or RateLimitedFetcherConfig()
        if self.cfg.concurrent_requests < 1:
            raise ValueError("concurrent_requests must be >= 1")
        if self.cfg.client_refresh_threshold < 1:
            raise ValueError("client_refresh_threshold must be >= 1")
        if self.cfg.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        self.state = FetcherState.INIT
        self._transport = transport
        self._handshake_url = handshake_url
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._queue: Deque[EndpointTask] = deque(EndpointTask(url=u) for u in endpoints)
        self._requests_since_refresh = 0
        self._outcome = FetchOutcome()

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def run(self) -> FetchOutcome:
        if self.state != FetcherState.INIT:
            raise RuntimeError(f"RateLimitedFetcher.run() called in state {self.state.value}")

        total = len(self._queue)
        if total == 0:
            self.state = FetcherState.DONE
            return self._outcome

        self.state = FetcherState.HANDSHAKE
        if not await self._handshake():
            logger.error("Initial handshake failed url={} - failing {} endpoints", self._handshake_url, total)
            while self._queue:
                task = self._queue.popleft()
                self._outcome.failures.append(
                    FetchFailure(url=task.url, reason=HANDSHAKE_FAILED_REASON, attempts=task.retry_count)
                )
            self.state = FetcherState.DONE
            return self._outcome

        self.state = FetcherState.RUNNING
        self._requests_since_refresh = 0

        while self._queue:
            n = min(self.cfg.concurrent_requests, len(self._queue))
            batch = [self._queue.popleft() for _ in range(n)]

            results = await asyncio.gather(*(self._attempt(t) for t in batch))
            self._outcome.requests_issued += n
            self._requests_since_refresh += n

            pending = [t for t, r in zip(batch, results) if r in (_Result.RATE_LIMITED, _Result.RETRY)]
            rate_limited = any(r == _Result.RATE_LIMITED for r in results)

            if not rate_limited and self._requests_since_refresh < self.cfg.client_refresh_threshold:
                self._queue.extend(pending)
                continue

            self.state = FetcherState.REFRESHING
            if await self._refresh(rate_limited):
                self._queue.extend(pending)
            else:
                # Unfinished tasks go back to the front of the queue.
                self._queue.extendleft(reversed(pending))
                logger.warning(
                    "Session refresh handshake failed - pausing {}s ({} endpoints pending)",
                    self.cfg.handshake_pause_s,
                    len(self._queue),
                )
                await self._sleep(self.cfg.handshake_pause_s)
            self.state = FetcherState.RUNNING

        self.state = FetcherState.DONE
        logger.info(
            "Fetch done endpoints={} ok={} failed={} requests={} refreshes={}",
            total,
            len(self._outcome.successes),
            len(self._outcome.failures),
            self._outcome.requests_issued,
            self._outcome.refreshes,
        )
        return self._outcome

    async def _handshake(self) -> bool:
        try:
            resp = await self._transport.get(self._handshake_url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Handshake transport error url={}: {!r}", self._handshake_url, e)
            return False
        if resp.status >= 500:
            logger.warning("Handshake server error url={} status={}", self._handshake_url, resp.status)
            return False
        return True

    async def _refresh(self, rate_limited: bool) -> bool:
        self._outcome.refreshes += 1
        self._requests_since_refresh = 0

        await self._transport.reset()
        if rate_limited:
            delay = self._rng.uniform(self.cfg.rate_limit_backoff_min_s, self.cfg.rate_limit_backoff_max_s)
            logger.warning("Rate limited - new session after {:.2f}s backoff", delay)
            await self._sleep(delay)
        else:
            logger.info("Request threshold {} reached - rotating session", self.cfg.client_refresh_threshold)

        return await self._handshake()

    def _retry_or_fail(self, task: EndpointTask, reason: str, status: Optional[int]) -> _Result:
        task.retry_count += 1
        if task.retry_count <= self.cfg.max_retries:
            logger.warning(
                "[RETRYING] {} reason={} attempt {}/{}",
                task.url,
                reason,
                task.retry_count,
                self.cfg.max_retries + 1,
            )
            return _Result.RETRY

        logger.error("[GAVE UP] {} reason={} after {} attempts", task.url, reason, task.retry_count)
        self._outcome.failures.append(
            FetchFailure(url=task.url, reason=reason, status=status, attempts=task.retry_count)
        )
        return _Result.FAILED

    async def _attempt(self, task: EndpointTask) -> _Result:
        try:
            resp = await self._transport.get(task.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return self._retry_or_fail(task, f"transport error: {e!r}", None)

        status = resp.status
        if status == 200:
            self._outcome.successes.append(FetchSuccess(url=task.url, data=resp.data))
            return _Result.OK

        if status == 429:
            logger.debug("[RATE LIMITED] {}", task.url)
            return _Result.RATE_LIMITED

        if status >= 500:
            return self._retry_or_fail(task, f"HTTP {status}", status)

        logger.error("[FAILED] {} status={} (not retryable)", task.url, status)
        self._outcome.failures.append(
            FetchFailure(url=task.url, reason=f"HTTP {status}", status=status, attempts=task.retry_count + 1)
        )
        return _Result.FAILED
