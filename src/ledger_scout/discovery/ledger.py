from __future__ import annotations

import logging
from typing import Optional, Protocol

import aiohttp

from ledger_scout.discovery.models import LedgerRecord

logger = logging.getLogger(__name__)


class LedgerReader(Protocol):
    """
    Read handle onto the append-only ledger.

    `get_record_at` returns None for an index past the end of the ledger and
    raises for any other failure.
    """

    async def get_record_count(self) -> int:
        ...

    async def get_record_at(self, index: int) -> Optional[LedgerRecord]:
        ...


class HttpLedger:
    """
    LedgerReader over a REST view of the ledger.

    `GET <base>/records/count` returns `{"count": n}` and
    `GET <base>/records/<index>` returns one record, or 404 past the end.
    """

    def __init__(self, *, base_url: str, request_timeout_seconds: float) -> None:
        if not base_url.strip():
            raise ValueError("HttpLedger requires a base_url")
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> HttpLedger:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if self._session and not self._session.closed:
            return
        self._session = aiohttp.ClientSession(timeout=self._timeout)

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def get_record_count(self) -> int:
        session = await self._ensure_session()
        async with session.get(f"{self._base_url}/records/count") as response:
            response.raise_for_status()
            payload = await response.json(content_type=None)
        return int(payload["count"])

    async def get_record_at(self, index: int) -> Optional[LedgerRecord]:
        session = await self._ensure_session()
        async with session.get(f"{self._base_url}/records/{index}") as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            payload = await response.json(content_type=None)
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected ledger record payload for index {index}: {type(payload).__name__}")
        payload.setdefault("index", index)
        return LedgerRecord.model_validate(payload)

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session
