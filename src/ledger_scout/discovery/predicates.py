from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ledger_scout.discovery.models import LedgerRecord


@dataclass(frozen=True, slots=True)
class RecordPredicate:
    """A record filter with a stable name; the name keys the discovery cache."""

    name: str
    test: Callable[[LedgerRecord], bool]

    def __call__(self, record: LedgerRecord) -> bool:
        return bool(self.test(record))


LISTED_FOR_SALE = RecordPredicate("listed", lambda record: record.listed)
ALL_RECORDS = RecordPredicate("all", lambda record: True)


def category_predicate(category: str) -> RecordPredicate:
    wanted = category.strip().lower()
    return RecordPredicate(
        f"category:{wanted}",
        lambda record: record.listed and record.category.strip().lower() == wanted,
    )


def predicate_from_name(name: str) -> RecordPredicate:
    if name == LISTED_FOR_SALE.name:
        return LISTED_FOR_SALE
    if name == ALL_RECORDS.name:
        return ALL_RECORDS
    if name.startswith("category:") and name[len("category:") :].strip():
        return category_predicate(name[len("category:") :])
    raise ValueError(f"Unknown predicate: {name}")
