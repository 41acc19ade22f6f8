from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class HttpResponse:
    status: int
    data: Optional[Any] = None  # decoded JSON body, None if absent or not JSON


class BaseTransport(abc.ABC):
    """
    One shared HTTP session (connection pool + cookie jar).

    get() raises aiohttp.ClientError / asyncio.TimeoutError on transport
    failures and returns any HTTP status as a response. reset() throws the
    session away and starts a fresh one with no server-set cookies.
    """

    @abc.abstractmethod
    async def get(self, url: str) -> HttpResponse: ...

    @abc.abstractmethod
    async def reset(self) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...
