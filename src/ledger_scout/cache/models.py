from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class CacheEntry:
    key: str
    value: Any
    created_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.created_at < self.ttl

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)


@dataclass(frozen=True, slots=True)
class CacheLookup:
    value: Any
    is_fresh: bool
