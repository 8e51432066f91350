"""Cached content resolution and incremental discovery over an append-only ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ledger_scout.errors import (
    GatewayError,
    GatewayExhausted,
    GatewayTimeout,
    GatewayUnreachable,
    LedgerCheckFailed,
    LedgerScoutError,
    MalformedIdentifier,
)

if TYPE_CHECKING:
    from ledger_scout.config.models import AppConfig
    from ledger_scout.service import ResolutionLayer

__all__ = [
    "AppConfig",
    "GatewayError",
    "GatewayExhausted",
    "GatewayTimeout",
    "GatewayUnreachable",
    "LedgerCheckFailed",
    "LedgerScoutError",
    "MalformedIdentifier",
    "ResolutionLayer",
]


def __getattr__(name: str):
    if name == "ResolutionLayer":
        from ledger_scout.service import ResolutionLayer as _ResolutionLayer

        return _ResolutionLayer
    if name == "AppConfig":
        from ledger_scout.config.models import AppConfig as _AppConfig

        return _AppConfig
    raise AttributeError(name)
