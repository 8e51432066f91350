from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ledger_scout.cache.store import TtlCacheStore
from ledger_scout.coalescer import RequestCoalescer
from ledger_scout.config.models import ScannerSettings
from ledger_scout.content.service import ContentResolutionService
from ledger_scout.discovery.ledger import LedgerReader
from ledger_scout.discovery.models import (
    CheckFailed,
    DiscoveredRecord,
    DiscoveryResult,
    DoesNotExist,
    Exists,
    LedgerRecord,
    RecordState,
    ScanStatus,
    ScanWindow,
)
from ledger_scout.discovery.predicates import RecordPredicate
from ledger_scout.errors import LedgerCheckFailed
from ledger_scout.scheduler import BackgroundScheduler

logger = logging.getLogger(__name__)

RECORD_NAMESPACE = "record:"
DISCOVERY_NAMESPACE = "discovery:"
LEDGER_BOUND_KEY = "ledger:bound"


class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    ABORTED = "aborted"


class DiscoveryScanner:
    """
    Walks the ledger in sequential batches of concurrent checks.

    Within a batch every check settles before the batch is evaluated, in index
    order. A not-found result marks the end of the ledger, a run of
    `failure_threshold` failed checks trips the circuit breaker, and matching
    records are content-resolved before the next batch is dispatched.
    """

    def __init__(
        self,
        *,
        ledger: LedgerReader,
        content: ContentResolutionService,
        cache: TtlCacheStore,
        coalescer: RequestCoalescer,
        scheduler: BackgroundScheduler,
        settings: ScannerSettings,
        record_ttl_seconds: float,
        discovery_ttl_seconds: float,
        aborted_discovery_ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._content = content
        self._cache = cache
        self._coalescer = coalescer
        self._scheduler = scheduler
        self._settings = settings
        self._record_ttl = record_ttl_seconds
        self._discovery_ttl = discovery_ttl_seconds
        self._aborted_ttl = aborted_discovery_ttl_seconds
        self._clock = clock
        self._phases: Dict[str, ScanPhase] = {}

    def phase(self, predicate: RecordPredicate) -> ScanPhase:
        """Phase of the latest scan for `predicate`, IDLE if it was never scanned."""
        return self._phases.get(self.cache_key(predicate), ScanPhase.IDLE)

    def cache_key(self, predicate: RecordPredicate) -> str:
        return f"{DISCOVERY_NAMESPACE}{predicate.name}:{self._settings.start_index}"

    @staticmethod
    def record_key(index: int) -> str:
        return f"{RECORD_NAMESPACE}{index}"

    async def discover(
        self,
        predicate: RecordPredicate,
        *,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DiscoveryResult:
        key = self.cache_key(predicate)
        if not force_refresh:
            lookup = self._cache.get_stale(key)
            if lookup is not None:
                cached = self._from_cached(key, lookup.value)
                if cached is not None:
                    if not lookup.is_fresh:
                        logger.debug("Serving stale discovery result, scheduling rescan. key=%s", key)
                        self._scheduler.schedule(key, partial(self._rescan, predicate))
                    return cached.model_copy(update={"from_cache": True, "stale": not lookup.is_fresh})

        if cancel_event is not None:
            # A caller-owned cancellation signal cannot be shared with other waiters.
            return await self._scan_and_store(predicate, cancel_event)
        return await self._coalescer.run_exclusive(key, partial(self._scan_and_store, predicate, None))

    def invalidate(self, predicate: Optional[RecordPredicate] = None) -> int:
        if predicate is None:
            return self._cache.invalidate_prefix(DISCOVERY_NAMESPACE)
        return int(self._cache.invalidate(self.cache_key(predicate)))

    def invalidate_record(self, index: int) -> int:
        removed = int(self._cache.invalidate(self.record_key(index)))
        return removed + self.invalidate()

    async def compute_window(self) -> ScanWindow:
        settings = self._settings
        bound: Optional[int] = None
        known_end: Optional[int] = None
        try:
            count = await asyncio.wait_for(self._ledger.get_record_count(), timeout=settings.check_timeout_seconds)
            bound = known_end = settings.start_index + int(count) - 1
            self._cache.set(LEDGER_BOUND_KEY, bound, self._discovery_ttl)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            lookup = self._cache.get_stale(LEDGER_BOUND_KEY)
            if lookup is not None and isinstance(lookup.value, int):
                bound = lookup.value
            logger.warning(
                "Failed to read ledger record count, using fallback bound. error=%s bound=%s",
                e,
                bound if bound is not None else settings.default_bound,
            )
        if bound is None:
            bound = settings.default_bound
        margin = min(settings.safety_margin, settings.max_safety_margin)
        return ScanWindow(
            start_index=settings.start_index,
            end_index=max(settings.start_index - 1, bound) + margin,
            batch_size=settings.batch_size,
            known_end=known_end,
        )

    async def check_record(self, index: int) -> RecordState:
        key = self.record_key(index)
        cached = self._cache.get(key)
        if cached is not None:
            try:
                return Exists(index=index, record=LedgerRecord.model_validate(cached))
            except ValidationError:
                logger.warning("Dropping unreadable cached record. index=%d", index)
                self._cache.invalidate(key)
        return await self._coalescer.run_exclusive(key, partial(self._read_record, index))

    async def scan(
        self,
        predicate: RecordPredicate,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> DiscoveryResult:
        key = self.cache_key(predicate)
        self._phases[key] = ScanPhase.SCANNING
        window = await self.compute_window()
        threshold = self._settings.failure_threshold
        logger.info(
            "Discovery scan started. predicate=%s start=%d end=%d batch_size=%d",
            predicate.name,
            window.start_index,
            window.end_index,
            window.batch_size,
        )

        matches: List[DiscoveredRecord] = []
        consecutive_failures = 0
        batches = 0
        checks = 0
        sentinel: Optional[int] = None
        status = ScanStatus.COMPLETED
        abort_reason = None
        next_index = window.start_index

        while next_index <= window.end_index:
            if window.known_end is not None and next_index > window.known_end:
                # The margin only widens a batch that starts inside the counted ledger.
                logger.debug(
                    "Reached counted end of ledger. predicate=%s known_end=%d",
                    predicate.name,
                    window.known_end,
                )
                break
            if cancel_event is not None and cancel_event.is_set():
                status, abort_reason = ScanStatus.ABORTED, "cancelled"
                break

            indices = window.batch_starting_at(next_index)
            states = await asyncio.gather(*(self.check_record(index) for index in indices))
            batches += 1
            checks += len(indices)

            if cancel_event is not None and cancel_event.is_set():
                status, abort_reason = ScanStatus.ABORTED, "cancelled"
                break

            batch_matches: List[LedgerRecord] = []
            tripped = False
            for state in states:
                if isinstance(state, DoesNotExist):
                    sentinel = state.index
                    break
                if isinstance(state, CheckFailed):
                    consecutive_failures += 1
                    logger.debug(
                        "Ledger check failed. index=%d consecutive=%d error=%s",
                        state.index,
                        consecutive_failures,
                        state.error.cause,
                    )
                    if consecutive_failures >= threshold:
                        tripped = True
                        break
                    continue
                consecutive_failures = 0
                if isinstance(state, Exists) and self._matches(predicate, state.record):
                    batch_matches.append(state.record)

            if batch_matches:
                matches.extend(await self._resolve_matches(batch_matches))

            if tripped:
                status, abort_reason = ScanStatus.ABORTED, "circuit_breaker"
                logger.warning(
                    "Discovery scan aborted by circuit breaker. predicate=%s failures=%d batches=%d",
                    predicate.name,
                    consecutive_failures,
                    batches,
                )
                break
            if sentinel is not None:
                logger.debug("Reached end of ledger. predicate=%s sentinel=%d", predicate.name, sentinel)
                break
            next_index += len(indices)

        if abort_reason == "cancelled":
            logger.info("Discovery scan cancelled. predicate=%s batches=%d", predicate.name, batches)

        self._phases[key] = ScanPhase.COMPLETED if status is ScanStatus.COMPLETED else ScanPhase.ABORTED
        result = DiscoveryResult(
            predicate=predicate.name,
            status=status,
            abort_reason=abort_reason,
            records=matches,
            start_index=window.start_index,
            end_index=window.end_index,
            batches_scanned=batches,
            checks_issued=checks,
            sentinel_index=sentinel,
            scanned_at=self._clock(),
        )
        logger.info(
            "Discovery scan finished. predicate=%s status=%s matches=%d batches=%d checks=%d",
            predicate.name,
            status.value,
            result.total_items,
            batches,
            checks,
        )
        return result

    async def _read_record(self, index: int) -> RecordState:
        try:
            record = await asyncio.wait_for(
                self._ledger.get_record_at(index),
                timeout=self._settings.check_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return CheckFailed(index=index, error=LedgerCheckFailed(index, e))
        if record is None:
            return DoesNotExist(index=index)
        # DoesNotExist is never cached so records appended later are picked up.
        self._cache.set(self.record_key(index), record.model_dump(mode="json"), self._record_ttl)
        return Exists(index=index, record=record)

    async def _resolve_matches(self, records: Sequence[LedgerRecord]) -> List[DiscoveredRecord]:
        template = self._settings.fallback_name_template
        metadata = await asyncio.gather(
            *(
                self._content.resolve_metadata(record.content_uri, fallback_name=template.format(index=record.index))
                for record in records
            )
        )
        return [DiscoveredRecord(record=record, metadata=meta) for record, meta in zip(records, metadata)]

    async def _scan_and_store(
        self,
        predicate: RecordPredicate,
        cancel_event: Optional[asyncio.Event],
    ) -> DiscoveryResult:
        result = await self.scan(predicate, cancel_event=cancel_event)
        key = self.cache_key(predicate)
        if result.completed:
            self._cache.set(key, result.model_dump(mode="json"), self._discovery_ttl)
        elif result.abort_reason == "circuit_breaker":
            self._cache.set(key, result.model_dump(mode="json"), self._aborted_ttl)
        return result

    async def _rescan(self, predicate: RecordPredicate, cancel_event: asyncio.Event) -> None:
        key = self.cache_key(predicate)
        await self._coalescer.run_exclusive(key, partial(self._scan_and_store, predicate, cancel_event))

    def _from_cached(self, key: str, value: object) -> Optional[DiscoveryResult]:
        try:
            return DiscoveryResult.model_validate(value)
        except ValidationError:
            logger.warning("Dropping unreadable cached discovery result. key=%s", key)
            self._cache.invalidate(key)
            return None

    @staticmethod
    def _matches(predicate: RecordPredicate, record: LedgerRecord) -> bool:
        try:
            return predicate(record)
        except Exception:
            logger.exception(
                "Predicate raised, treating record as non-matching. predicate=%s index=%d",
                predicate.name,
                record.index,
            )
            return False
