"""
SyncLedger Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with SYNCLEDGER_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from syncledger.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        database={"path": "ledger.db"},
        delivery={"max_retries": 8},
    )
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class HashAlgorithm(str, Enum):
    """Digest used for origin and target content hashes."""

    MD5 = "md5"
    SHA256 = "sha256"


class DatabaseConfig(BaseModel):
    """Ledger database configuration."""

    path: Path = Field(
        default=Path("syncledger.db"),
        description="Path to the SQLite ledger database",
    )
    busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long a writer waits on a locked database",
    )


class ReconcileOptions(BaseModel):
    """Options controlling reconciliation runs."""

    concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Records reconciled concurrently within one run",
    )
    record_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Budget for mapping + target write of a single record",
    )
    run_timeout_seconds: float | None = Field(
        default=3600.0,
        gt=0,
        description="Budget for a whole run (None = unbounded)",
    )
    hash_algorithm: HashAlgorithm = Field(
        default=HashAlgorithm.MD5,
        description="Algorithm for content hashes",
    )
    max_snapshot_bytes: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Source/target snapshots larger than this are truncated in contract logs",
    )


class DeliveryConfig(BaseModel):
    """Event delivery and retry configuration."""

    max_retries: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Failed attempts after which a message is terminally failed",
    )
    backoff_base_minutes: float = Field(
        default=5.0,
        gt=0,
        description="Delay before the first retry",
    )
    backoff_factor: float = Field(
        default=2.0,
        gt=1.0,
        description="Multiplier applied per additional failure (above 1 so delays grow)",
    )
    backoff_max_minutes: float = Field(
        default=24 * 60.0,
        gt=0,
        description="Upper bound for a single backoff delay",
    )
    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for a single push delivery",
    )
    batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Messages fetched per retry page",
    )
    max_batches_per_tick: int = Field(
        default=10,
        ge=1,
        description="Retry pages processed per scheduler tick",
    )
    concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Concurrent push deliveries",
    )
    inline: bool = Field(
        default=True,
        description="Attempt push delivery as soon as an event is published",
    )

    @model_validator(mode="after")
    def validate_backoff(self) -> Self:
        """Cap must not be below the base delay."""
        if self.backoff_max_minutes < self.backoff_base_minutes:
            raise ValueError("backoff_max_minutes must be >= backoff_base_minutes")
        return self


class RetentionConfig(BaseModel):
    """Expiry offsets stamped on rows when they are created."""

    synchronization_log_days: int = Field(default=30, ge=1)
    contract_log_days: int = Field(default=7, ge=1)
    event_message_days: int = Field(default=30, ge=1)


class SchedulerConfig(BaseModel):
    """Periodic driver configuration."""

    tick_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Sleep between scheduler ticks",
    )
    concurrent_synchronizations: int = Field(
        default=2,
        ge=1,
        description="Due synchronizations run concurrently per tick",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )


class Settings(BaseSettings):
    """
    Main settings class for SyncLedger.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (SYNCLEDGER_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export SYNCLEDGER_DATABASE__PATH="/var/lib/syncledger/ledger.db"
        export SYNCLEDGER_DELIVERY__MAX_RETRIES=8
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNCLEDGER_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    reconcile: ReconcileOptions = Field(default_factory=ReconcileOptions)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            import tomllib

            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        if path.suffix in (".toml", ".tml"):
            # Basic TOML serialization, sections are one level deep
            lines = []
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        lines.append(f"{k} = {json.dumps(v)}")
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            path.write_text("\n".join(lines).lstrip() + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
