from __future__ import annotations

from ledger_scout.config.loader import YamlConfigLoader
from ledger_scout.config.models import (
    AppConfig,
    CacheSettings,
    ConfigLoadRequest,
    ContentSettings,
    GatewaySettings,
    LedgerSettings,
    LoggingSettings,
    ScannerSettings,
)

__all__ = [
    "AppConfig",
    "CacheSettings",
    "ConfigLoadRequest",
    "ContentSettings",
    "GatewaySettings",
    "LedgerSettings",
    "LoggingSettings",
    "ScannerSettings",
    "YamlConfigLoader",
]
