"""TTL cache store with best-effort durable backing."""

from __future__ import annotations

from ledger_scout.cache.models import CacheEntry, CacheLookup
from ledger_scout.cache.storage import DurableStorage, JsonFileStorage, MemoryStorage
from ledger_scout.cache.store import TtlCacheStore

__all__ = [
    "CacheEntry",
    "CacheLookup",
    "DurableStorage",
    "JsonFileStorage",
    "MemoryStorage",
    "TtlCacheStore",
]
