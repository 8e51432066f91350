from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional, TypeVar

from ledger_scout.cache.storage import DurableStorage, JsonFileStorage
from ledger_scout.cache.store import TtlCacheStore
from ledger_scout.coalescer import RequestCoalescer
from ledger_scout.config.models import AppConfig
from ledger_scout.content.fetcher import ContentFetcher, HttpFetcher
from ledger_scout.content.models import RecordMetadata, ResolvedContent
from ledger_scout.content.service import ContentResolutionService
from ledger_scout.discovery.ledger import LedgerReader
from ledger_scout.discovery.models import DiscoveryResult
from ledger_scout.discovery.predicates import LISTED_FOR_SALE, RecordPredicate
from ledger_scout.discovery.scanner import DiscoveryScanner
from ledger_scout.errors import LedgerScoutError
from ledger_scout.gateways import GatewayResolver
from ledger_scout.scheduler import BackgroundScheduler

logger = logging.getLogger(__name__)

D = TypeVar("D")


class ResolutionLayer:
    """
    Process-scoped entry point wiring the cache, coalescer, gateways and scanner.

    Construct one per process and share it; `stop()` releases the sweep task,
    background refreshes and HTTP sessions it owns.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        ledger: Optional[LedgerReader] = None,
        fetcher: Optional[ContentFetcher] = None,
        storage: Optional[DurableStorage] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.ledger = ledger

        if storage is None and config.cache.storage_path.strip():
            storage = JsonFileStorage(config.cache.storage_path.strip())
        self._owned_fetcher: Optional[HttpFetcher] = None
        if fetcher is None:
            self._owned_fetcher = HttpFetcher(max_content_bytes=config.gateways.max_content_bytes)
            fetcher = self._owned_fetcher

        self.cache = TtlCacheStore(
            max_age_seconds=config.cache.max_age_seconds,
            storage=storage,
            flush_delay_seconds=config.cache.flush_delay_seconds,
            clock=clock,
        )
        self.coalescer = RequestCoalescer()
        self.scheduler = BackgroundScheduler()
        self.resolver = GatewayResolver(
            config.gateways.templates,
            probe_direct_urls=config.gateways.probe_direct_urls,
        )
        self.content = ContentResolutionService(
            resolver=self.resolver,
            fetcher=fetcher,
            cache=self.cache,
            coalescer=self.coalescer,
            scheduler=self.scheduler,
            success_ttl_seconds=config.cache.content_ttl_seconds,
            failure_ttl_seconds=config.cache.failure_ttl_seconds,
            request_timeout_seconds=config.gateways.request_timeout_seconds,
            placeholder_image=config.content.placeholder_image,
            unavailable_name=config.content.unavailable_name,
            unavailable_description=config.content.unavailable_description,
        )
        self.scanner: Optional[DiscoveryScanner] = None
        if ledger is not None:
            self.scanner = DiscoveryScanner(
                ledger=ledger,
                content=self.content,
                cache=self.cache,
                coalescer=self.coalescer,
                scheduler=self.scheduler,
                settings=config.scanner,
                record_ttl_seconds=config.cache.record_ttl_seconds,
                discovery_ttl_seconds=config.cache.discovery_ttl_seconds,
                aborted_discovery_ttl_seconds=config.cache.aborted_discovery_ttl_seconds,
                clock=clock,
            )

    async def __aenter__(self) -> ResolutionLayer:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        self.cache.start_periodic_sweep(self.config.cache.sweep_interval_seconds)

    async def stop(self) -> None:
        await self.cache.stop_periodic_sweep()
        await self.scheduler.shutdown()
        await self.cache.flush()
        if self._owned_fetcher is not None:
            await self._owned_fetcher.stop()

    async def resolve_content(self, identifier: str, default: D) -> ResolvedContent | D:
        return await self.content.resolve_content(identifier, default)

    async def resolve_metadata(self, identifier: Optional[str], *, fallback_name: str) -> RecordMetadata:
        return await self.content.resolve_metadata(identifier, fallback_name=fallback_name)

    async def discover(
        self,
        predicate: RecordPredicate = LISTED_FOR_SALE,
        *,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DiscoveryResult:
        return await self._require_scanner().discover(
            predicate,
            force_refresh=force_refresh,
            cancel_event=cancel_event,
        )

    def invalidate(self, scope: str = "") -> int:
        """Drop every cache entry whose key starts with `scope`; the empty scope clears everything."""
        removed = self.cache.invalidate_prefix(scope)
        logger.info("Cache invalidated. scope=%r removed=%d", scope, removed)
        return removed

    def invalidate_record(self, index: int) -> int:
        """Forget one record and every discovery result that may include it."""
        return self._require_scanner().invalidate_record(index)

    def sweep(self) -> int:
        return self.cache.sweep()

    def _require_scanner(self) -> DiscoveryScanner:
        if self.scanner is None:
            raise LedgerScoutError("No ledger read handle configured; discovery is unavailable.")
        return self.scanner
