from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_GATEWAYS = (
    "https://gateway.pinata.cloud/ipfs/{cid}",
    "https://ipfs.io/ipfs/{cid}",
    "https://cloudflare-ipfs.com/ipfs/{cid}",
)


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str = ""
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: FileLoggingSettings = FileLoggingSettings()
    # Per-logger levels, e.g. {"ledger_scout.discovery": "DEBUG"}.
    loggers: Dict[str, str] = Field(default_factory=dict)


class GatewaySettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Priority order: the first template is the preferred mirror.
    templates: Sequence[str] = DEFAULT_GATEWAYS
    request_timeout_seconds: float = Field(default=8.0, gt=0)
    probe_direct_urls: bool = True
    max_content_bytes: int = Field(default=10 * 1024 * 1024, gt=0)


class CacheSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Empty path keeps the cache in memory only.
    storage_path: str = ""

    content_ttl_seconds: float = Field(default=30 * 60, gt=0)
    failure_ttl_seconds: float = Field(default=60, gt=0)
    record_ttl_seconds: float = Field(default=2 * 60, gt=0)
    discovery_ttl_seconds: float = Field(default=2 * 60, gt=0)
    aborted_discovery_ttl_seconds: float = Field(default=30, gt=0)

    max_age_seconds: float = Field(default=7 * 24 * 60 * 60, gt=0)
    sweep_interval_seconds: float = Field(default=5 * 60, gt=0)
    # Unsaved changes are written this long after the first one.
    flush_delay_seconds: float = Field(default=5, gt=0)

    @model_validator(mode="after")
    def _check_ttls(self) -> CacheSettings:
        if self.failure_ttl_seconds >= self.content_ttl_seconds:
            raise ValueError("failure_ttl_seconds must be shorter than content_ttl_seconds")
        if self.aborted_discovery_ttl_seconds > self.discovery_ttl_seconds:
            raise ValueError("aborted_discovery_ttl_seconds must not exceed discovery_ttl_seconds")
        return self


class ScannerSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    start_index: int = Field(default=1, ge=0)
    batch_size: int = Field(default=10, ge=1)
    failure_threshold: int = Field(default=5, ge=1)

    # Used when the ledger record count cannot be read.
    default_bound: int = Field(default=1000, ge=0)
    safety_margin: int = Field(default=10, ge=0)
    max_safety_margin: int = Field(default=100, ge=0)

    check_timeout_seconds: float = Field(default=8.0, gt=0)
    fallback_name_template: str = "NFT #{index}"


class LedgerSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = ""
    request_timeout_seconds: float = Field(default=8.0, gt=0)


class ContentSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    placeholder_image: str = "/NFT-placeholder.webp"
    unavailable_name: str = "Metadata unavailable"
    unavailable_description: str = "Could not load the record metadata."


class AppConfig(BaseModel):
    """Effective runtime configuration after applying all precedence rules."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    logging: LoggingSettings = LoggingSettings()
    gateways: GatewaySettings = GatewaySettings()
    cache: CacheSettings = CacheSettings()
    scanner: ScannerSettings = ScannerSettings()
    ledger: LedgerSettings = LedgerSettings()
    content: ContentSettings = ContentSettings()


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "data/config/config.yaml"
    env_prefix: str = "LEDGER_SCOUT__"
    dotenv_path: Optional[str] = "data/.env"
