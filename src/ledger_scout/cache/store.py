from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ledger_scout.cache.models import CacheEntry, CacheLookup
from ledger_scout.cache.storage import DurableStorage

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class TtlCacheStore:
    """
    Key/value store with per-entry TTL and optional durable backing.

    Expired entries stay readable through `get_stale` until they exceed the hard
    `max_age_seconds`, at which point reads and the periodic sweep drop them.
    Mutations are mirrored to the durable storage in memory; the document is
    written `flush_delay_seconds` after the first unsaved change, after every
    sweep and on `flush()`. Writes run in a worker thread and are best-effort.
    """

    def __init__(
        self,
        *,
        max_age_seconds: float,
        storage: Optional[DurableStorage] = None,
        flush_delay_seconds: float = 5.0,
        clock: Clock = time.time,
    ) -> None:
        self._max_age_seconds = max_age_seconds
        self._storage = storage
        self._flush_delay_seconds = flush_delay_seconds
        self._flush_task: Optional[asyncio.Task] = None
        self._flush_lock = asyncio.Lock()
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._restore()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Any:
        """Return the value only while it is fresh, otherwise None."""
        lookup = self.get_stale(key)
        if lookup is None or not lookup.is_fresh:
            return None
        return lookup.value

    def get_stale(self, key: str) -> Optional[CacheLookup]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if entry.age(now) >= self._max_age_seconds:
            logger.debug("Evicting cache entry past max age. key=%s", key)
            self._drop(key)
            return None
        return CacheLookup(value=entry.value, is_fresh=entry.is_fresh(now))

    def set(self, key: str, value: Any, ttl: float) -> None:
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), ttl=float(ttl))
        self._entries[key] = entry
        self._persist(entry)

    def invalidate(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._drop(key)
        return True

    def invalidate_prefix(self, prefix: str) -> int:
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            self._drop(key)
        if keys:
            logger.debug("Invalidated cache namespace. prefix=%s removed=%d", prefix, len(keys))
        return len(keys)

    def clear(self) -> None:
        self.invalidate_prefix("")

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.age(now) >= self._max_age_seconds]
        for key in expired:
            self._drop(key)
        if expired:
            logger.info("Cache sweep removed entries. removed=%d remaining=%d", len(expired), len(self._entries))
        return len(expired)

    def describe(self) -> List[dict]:
        now = self._clock()
        info = []
        for key, entry in sorted(self._entries.items()):
            age = entry.age(now)
            info.append(
                {
                    "key": key,
                    "age_seconds": round(age, 3),
                    "remaining_seconds": round(max(0.0, entry.ttl - age), 3),
                    "fresh": entry.is_fresh(now),
                }
            )
        return info

    async def flush(self) -> bool:
        """Write unsaved changes now. Returns True when a document was written."""
        if self._storage is None:
            return False
        task = self._flush_task
        self._flush_task = None
        if task is not None and not task.done():
            task.cancel()
        return await self._write_pending()

    def start_periodic_sweep(self, interval_seconds: float) -> None:
        if self._sweep_task and not self._sweep_task.done():
            return
        self._stop_event.clear()
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop_periodic_sweep(self) -> None:
        if not self._sweep_task:
            return
        self._stop_event.set()
        await self._sweep_task
        self._sweep_task = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
            else:
                break
            try:
                self.sweep()
            except Exception:
                logger.exception("Cache sweep failed.")
            await self.flush()

    def _restore(self) -> None:
        if self._storage is None:
            return
        try:
            items = list(self._storage.items())
        except Exception:
            logger.exception("Failed to read durable cache storage, continuing in memory.")
            return
        now = self._clock()
        restored = 0
        for key, payload in items:
            try:
                entry = CacheEntry(
                    key=key,
                    value=payload["value"],
                    created_at=float(payload["created_at"]),
                    ttl=float(payload["ttl"]),
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed persisted cache entry. key=%s", key)
                continue
            if entry.age(now) >= self._max_age_seconds:
                continue
            self._entries[key] = entry
            restored += 1
        if restored:
            logger.info("Restored cache entries from durable storage. count=%d", restored)

    def _persist(self, entry: CacheEntry) -> None:
        if self._storage is None:
            return
        payload = {"value": entry.value, "created_at": entry.created_at, "ttl": entry.ttl}
        try:
            self._storage.set(entry.key, payload)
        except Exception as e:
            logger.warning("Failed to persist cache entry. key=%s error=%s", entry.key, e)
            return
        self._schedule_flush()

    def _drop(self, key: str) -> None:
        self._entries.pop(key, None)
        if self._storage is None:
            return
        try:
            self._storage.remove(key)
        except Exception as e:
            logger.warning("Failed to remove persisted cache entry. key=%s error=%s", key, e)
            return
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside a running loop the change waits for the next flush().
            return
        self._flush_task = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self._flush_delay_seconds)
        # A write in progress is never cancelled; flush() queues behind it on the lock.
        self._flush_task = None
        await self._write_pending()

    async def _write_pending(self) -> bool:
        async with self._flush_lock:
            document = self._storage.snapshot()
            if document is None:
                return False
            try:
                await asyncio.to_thread(self._storage.write, document)
            except Exception as e:
                self._storage.mark_dirty()
                logger.warning("Failed to write durable cache storage. error=%s", e)
                return False
        logger.debug("Wrote durable cache storage. entries=%d", len(document.get("entries", {})))
        return True
