"""Destination writer: COPY aggregated rows into the owned table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import BinaryIO

import asyncpg

from compactor.config import check_identifier, quote_identifier
from compactor.core.errors import DuplicateAggregateError, TransientDestinationError
from compactor.models import PartitionKey
from compactor.storage.database import classify_db_error

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DestinationSummary:
    """Totals over a partition's aggregated rows."""

    row_count: int
    trade_count: int
    volume_sum: Decimal
    max_sequence: int | None


class AggregateWriter:
    """Bulk-load encoded payloads into the destination table."""

    def __init__(self, table: str = "aggregated_executions"):
        self._table = check_identifier(table)

    @property
    def table(self) -> str:
        return self._table

    async def bulk_load(
        self,
        conn: asyncpg.Connection,
        source: Path | BinaryIO,
        columns: tuple[str, ...] | list[str],
    ) -> int:
        """COPY a staged payload on the caller's connection.

        Runs inside whatever transaction the caller holds open.

        Returns:
            Number of rows the server reports as copied

        Raises:
            DuplicateAggregateError: If a natural key already exists
        """
        try:
            result = await conn.copy_to_table(
                self._table,
                source=source,
                columns=list(columns),
                format="text",
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateAggregateError(
                f"{self._table}: {e.detail or e}"
            ) from e
        return int(result.split()[1])

    async def summarize(
        self, pool: asyncpg.Pool, partition: PartitionKey, up_to_sequence: int
    ) -> DestinationSummary:
        """Totals over aggregated rows whose last_sequence <= up_to_sequence."""
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""SELECT COUNT(*) AS row_count,
                               COALESCE(SUM(trade_count), 0) AS trade_count,
                               COALESCE(SUM(volume_sum), 0) AS volume_sum,
                               MAX(last_sequence) AS max_sequence
                        FROM {quote_identifier(self._table)}
                        WHERE exchange=$1 AND instrument=$2 AND last_sequence <= $3""",
                    partition.exchange,
                    partition.instrument,
                    up_to_sequence,
                )
        except Exception as e:
            mapped = classify_db_error(
                e, TransientDestinationError, "Destination summary failed",
                partition=partition,
            )
            if mapped is None:
                raise
            raise mapped from e
        return DestinationSummary(
            row_count=int(row["row_count"]),
            trade_count=int(row["trade_count"]),
            volume_sum=Decimal(row["volume_sum"]),
            max_sequence=None if row["max_sequence"] is None else int(row["max_sequence"]),
        )

    async def max_sequence(self, pool: asyncpg.Pool, partition: PartitionKey) -> int | None:
        """Highest last_sequence loaded for the partition, regardless of watermark."""
        try:
            async with pool.acquire() as conn:
                value = await conn.fetchval(
                    f"""SELECT MAX(last_sequence) FROM {quote_identifier(self._table)}
                        WHERE exchange=$1 AND instrument=$2""",
                    partition.exchange,
                    partition.instrument,
                )
        except Exception as e:
            mapped = classify_db_error(
                e, TransientDestinationError, "Destination max sequence read failed",
                partition=partition,
            )
            if mapped is None:
                raise
            raise mapped from e
        return None if value is None else int(value)
