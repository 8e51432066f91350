"""Content resolution through ranked gateways."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ledger_scout.content.models import RecordMetadata, ResolvedContent

if TYPE_CHECKING:
    from ledger_scout.content.fetcher import ContentFetcher, FetchResponse, HttpFetcher
    from ledger_scout.content.service import ContentResolutionService

__all__ = [
    "ContentFetcher",
    "ContentResolutionService",
    "FetchResponse",
    "HttpFetcher",
    "RecordMetadata",
    "ResolvedContent",
]


def __getattr__(name: str):
    if name in ("ContentFetcher", "FetchResponse", "HttpFetcher"):
        from ledger_scout.content import fetcher as _fetcher

        return getattr(_fetcher, name)
    if name == "ContentResolutionService":
        from ledger_scout.content.service import ContentResolutionService as _ContentResolutionService

        return _ContentResolutionService
    raise AttributeError(name)
