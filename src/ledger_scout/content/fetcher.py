from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import aiohttp

from ledger_scout.errors import GatewayTimeout, GatewayUnreachable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FetchResponse:
    url: str
    status: int
    content_type: str
    body: bytes


class ContentFetcher(Protocol):
    async def fetch(self, url: str, *, timeout: float) -> FetchResponse:
        """Return a successful response or raise a GatewayError."""
        ...

    async def probe(self, url: str, *, timeout: float) -> bool:
        """Cheap existence check, without downloading the body."""
        ...


class HttpFetcher:
    def __init__(self, *, max_content_bytes: int, user_agent: str = "ledger-scout") -> None:
        self._max_content_bytes = max_content_bytes
        self._user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> HttpFetcher:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if self._session and not self._session.closed:
            return
        self._session = aiohttp.ClientSession(headers={"User-Agent": self._user_agent})

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch(self, url: str, *, timeout: float) -> FetchResponse:
        session = await self._ensure_session()
        logger.debug("Fetching content. url=%s", url)
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with session.get(url, timeout=client_timeout) as response:
                if response.status != 200:
                    raise GatewayUnreachable(url, status=response.status)
                declared = response.content_length
                if declared is not None and declared > self._max_content_bytes:
                    raise GatewayUnreachable(url, status=response.status, detail=f"too large size={declared}")
                body = await response.read()
                if len(body) > self._max_content_bytes:
                    raise GatewayUnreachable(url, status=response.status, detail=f"too large size={len(body)}")
                content_type = response.headers.get("Content-Type", "")
                return FetchResponse(url=url, status=response.status, content_type=content_type, body=body)
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(url, timeout) from e
        except aiohttp.ClientError as e:
            raise GatewayUnreachable(url, detail=str(e)) from e

    async def probe(self, url: str, *, timeout: float) -> bool:
        session = await self._ensure_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        try:
            async with session.head(url, timeout=client_timeout, allow_redirects=True) as response:
                status = response.status
                response.release()
        except asyncio.TimeoutError as e:
            raise GatewayTimeout(url, timeout) from e
        except aiohttp.ClientError as e:
            logger.debug("Probe request failed. url=%s error=%s", url, e)
            return False
        return 200 <= status < 400

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session
