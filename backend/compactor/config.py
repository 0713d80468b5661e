"""Compactor configuration loaded from environment variables.

Nested source schema fields use a double underscore, e.g.
COMPACTOR_SOURCE__TABLE=trades_{exchange}.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(value: str) -> str:
    """Reject anything that is not a plain SQL identifier."""
    if not _IDENTIFIER.match(value):
        raise ValueError(f"not a valid SQL identifier: {value!r}")
    return value


def quote_identifier(value: str) -> str:
    return f'"{check_identifier(value)}"'


class SourceSchema(BaseModel):
    """Layout of the raw execution table written by the downloader.

    table may contain "{exchange}" for a one-table-per-exchange layout
    (e.g. "trades_{exchange}"); the exchange column is then absent and the
    exchanges come from settings.exchanges.
    """

    table: str = "executions"
    sequence_column: str = "id"
    timestamp_column: str = "traded_at"
    price_column: str = "price"
    volume_column: str = "amount"
    side_column: str | None = "side"
    exchange_column: str | None = "exchange"
    instrument_column: str | None = "instrument"

    @field_validator(
        "sequence_column",
        "timestamp_column",
        "price_column",
        "volume_column",
        "side_column",
        "exchange_column",
        "instrument_column",
        mode="before",
    )
    @classmethod
    def _check_column(cls, value: str | None) -> str | None:
        # Empty string unsets an optional column from the environment
        if value is None or value == "":
            return None
        return check_identifier(str(value))

    @field_validator("table")
    @classmethod
    def _check_table(cls, value: str) -> str:
        check_identifier(value.replace("{exchange}", "x"))
        return value

    @model_validator(mode="after")
    def _check_exchange_source(self):
        per_exchange = self.is_per_exchange
        if per_exchange and self.exchange_column:
            raise ValueError(
                "source.table uses {exchange}; source.exchange_column must be unset"
            )
        if not per_exchange and not self.exchange_column:
            raise ValueError(
                "source.exchange_column is required unless source.table uses {exchange}"
            )
        return self

    @property
    def is_per_exchange(self) -> bool:
        return "{exchange}" in self.table

    @property
    def side_aware(self) -> bool:
        return self.side_column is not None

    def table_for(self, exchange: str) -> str:
        """Quoted table name holding the given exchange's executions."""
        if self.is_per_exchange:
            return quote_identifier(self.table.format(exchange=exchange))
        return quote_identifier(self.table)


class CompactorSettings(BaseSettings):
    """Compactor settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COMPACTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Database (source, destination and watermarks live together)
    database_url: str = "postgresql://localhost/trades"
    pool_min_size: int = 2
    pool_max_size: int = 10

    # Source
    source: SourceSchema = SourceSchema()
    exchanges: list[str] = []  # Required for per-exchange tables

    # Owned tables
    target_table: str = "aggregated_executions"
    watermark_table: str = "aggregation_watermarks"
    lease_table: str = "aggregation_leases"

    # Batching
    batch_max_rows: int = 100_000
    seal_trailing_group: bool = True
    seal_grace_seconds: float = 300.0  # Older trailing groups are committed anyway

    # Encoding
    price_scale: int = 8
    volume_scale: int = 8
    staging_dir: Path | None = None  # None = stage COPY payloads in memory

    # Scheduling
    max_workers: int = 4
    poll_interval: float = 5.0
    fetch_timeout: float = 60.0
    commit_timeout: float = 120.0
    lease_ttl: float = 300.0

    # Backoff
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.1  # Fraction of the delay
    max_attempts: int = 5  # Per partition, --once mode only

    # Partition enable/disable list
    partitions_file: Path | None = None

    @field_validator("target_table", "watermark_table", "lease_table")
    @classmethod
    def _check_table(cls, value: str) -> str:
        return check_identifier(value)

    @field_validator("exchanges")
    @classmethod
    def _check_exchanges(cls, value: list[str]) -> list[str]:
        return [check_identifier(v.strip()) for v in value if v.strip()]

    @field_validator("batch_max_rows", "max_workers", "max_attempts", "pool_max_size")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @model_validator(mode="after")
    def _check_exchanges_for_layout(self):
        if self.source.is_per_exchange and not self.exchanges:
            raise ValueError(
                "exchanges must be listed when source.table uses {exchange}"
            )
        if self.seal_grace_seconds < 0:
            raise ValueError("seal_grace_seconds must be >= 0")
        if self.backoff_initial <= 0 or self.backoff_max < self.backoff_initial:
            raise ValueError("backoff_initial must be > 0 and <= backoff_max")
        return self


@lru_cache
def get_settings() -> CompactorSettings:
    """Get cached settings instance."""
    return CompactorSettings()
