"""Incremental discovery over the numbered ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ledger_scout.discovery.models import (
    CheckFailed,
    DiscoveredRecord,
    DiscoveryResult,
    DoesNotExist,
    Exists,
    LedgerRecord,
    NotChecked,
    RecordState,
    ScanStatus,
    ScanWindow,
)
from ledger_scout.discovery.predicates import (
    ALL_RECORDS,
    LISTED_FOR_SALE,
    RecordPredicate,
    category_predicate,
    predicate_from_name,
)

if TYPE_CHECKING:
    from ledger_scout.discovery.ledger import HttpLedger, LedgerReader
    from ledger_scout.discovery.scanner import DiscoveryScanner, ScanPhase

__all__ = [
    "ALL_RECORDS",
    "CheckFailed",
    "DiscoveredRecord",
    "DiscoveryResult",
    "DiscoveryScanner",
    "DoesNotExist",
    "Exists",
    "HttpLedger",
    "LISTED_FOR_SALE",
    "LedgerReader",
    "LedgerRecord",
    "NotChecked",
    "RecordPredicate",
    "RecordState",
    "ScanPhase",
    "ScanStatus",
    "ScanWindow",
    "category_predicate",
    "predicate_from_name",
]


def __getattr__(name: str):
    if name in ("HttpLedger", "LedgerReader"):
        from ledger_scout.discovery import ledger as _ledger

        return getattr(_ledger, name)
    if name in ("DiscoveryScanner", "ScanPhase"):
        from ledger_scout.discovery import scanner as _scanner

        return getattr(_scanner, name)
    raise AttributeError(name)
