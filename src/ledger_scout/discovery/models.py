from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from ledger_scout.content.models import RecordMetadata
from ledger_scout.errors import LedgerCheckFailed

AbortReason = Literal["circuit_breaker", "cancelled"]


class LedgerRecord(BaseModel):
    """Canonical view of one numbered ledger entry."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    index: int
    owner: Optional[str] = None
    seller: Optional[str] = None
    price: Decimal = Decimal("0")
    listed: bool = False
    listed_at: Optional[int] = None
    category: str = "collectibles"
    content_uri: Optional[str] = None


@dataclass(frozen=True, slots=True)
class NotChecked:
    index: int


@dataclass(frozen=True, slots=True)
class Exists:
    index: int
    record: LedgerRecord


@dataclass(frozen=True, slots=True)
class DoesNotExist:
    index: int


@dataclass(frozen=True, slots=True)
class CheckFailed:
    index: int
    error: LedgerCheckFailed


RecordState = Union[NotChecked, Exists, DoesNotExist, CheckFailed]


@dataclass(frozen=True, slots=True)
class ScanWindow:
    start_index: int
    end_index: int
    batch_size: int
    # Last index reported by the ledger's own count; None when the bound is a fallback.
    known_end: Optional[int] = None

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    def batch_starting_at(self, index: int) -> range:
        return range(index, min(index + self.batch_size, self.end_index + 1))

    @property
    def size(self) -> int:
        return max(0, self.end_index - self.start_index + 1)


class ScanStatus(str, Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


class DiscoveredRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    record: LedgerRecord
    metadata: RecordMetadata

    @property
    def index(self) -> int:
        return self.record.index


class DiscoveryResult(BaseModel):
    """
    Records matching a predicate, in ascending ledger index order.

    Aggregate statistics are derived from `records` on access and are never
    stored alongside them.
    """

    model_config = ConfigDict(extra="forbid")

    predicate: str
    status: ScanStatus
    abort_reason: Optional[AbortReason] = None
    records: List[DiscoveredRecord]
    start_index: int
    end_index: int
    batches_scanned: int = 0
    checks_issued: int = 0
    sentinel_index: Optional[int] = None
    scanned_at: float = 0.0
    from_cache: bool = False
    stale: bool = False

    @field_validator("records")
    @classmethod
    def _order_by_index(cls, value: List[DiscoveredRecord]) -> List[DiscoveredRecord]:
        return sorted(value, key=lambda item: item.record.index)

    @property
    def completed(self) -> bool:
        return self.status is ScanStatus.COMPLETED

    @property
    def indices(self) -> List[int]:
        return [item.record.index for item in self.records]

    @property
    def total_items(self) -> int:
        return len(self.records)

    @property
    def total_volume(self) -> Decimal:
        return sum((item.record.price for item in self.records if item.record.price > 0), Decimal("0"))

    @property
    def floor_price(self) -> Decimal:
        prices = [item.record.price for item in self.records if item.record.price > 0]
        return min(prices) if prices else Decimal("0")

    @property
    def ceiling_price(self) -> Decimal:
        prices = [item.record.price for item in self.records if item.record.price > 0]
        return max(prices) if prices else Decimal("0")

    @property
    def unique_owners(self) -> int:
        return len({item.record.owner for item in self.records if item.record.owner})
