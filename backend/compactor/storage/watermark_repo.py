"""Watermark repository: durable per-partition progress.

The watermark is only ever advanced inside the commit transaction, on the
same connection that loads the aggregated rows.
"""

from __future__ import annotations

import logging

import asyncpg

from compactor.config import quote_identifier
from compactor.core.errors import TransientDestinationError, WatermarkRegressionError
from compactor.models import START_SEQUENCE, PartitionKey, Watermark
from compactor.storage.database import classify_db_error

logger = logging.getLogger(__name__)


class WatermarkRepository:
    """Repository for watermark reads and in-transaction updates."""

    def __init__(self, pool: asyncpg.Pool, table: str = "aggregation_watermarks"):
        self._pool = pool
        self._table = quote_identifier(table)

    async def get(self, partition: PartitionKey) -> int | None:
        """Last committed sequence, or None if the partition never committed."""
        try:
            async with self._pool.acquire() as conn:
                value = await conn.fetchval(
                    f"""SELECT last_sequence FROM {self._table}
                        WHERE exchange=$1 AND instrument=$2""",
                    partition.exchange,
                    partition.instrument,
                )
        except Exception as e:
            mapped = classify_db_error(
                e, TransientDestinationError, "Watermark read failed",
                partition=partition,
            )
            if mapped is None:
                raise
            raise mapped from e
        return None if value is None else int(value)

    async def lock(self, conn: asyncpg.Connection, partition: PartitionKey) -> int:
        """Lock the watermark row for the caller's transaction and return it.

        Creates the row at START_SEQUENCE first so that concurrent committers
        of a fresh partition also serialize on it.
        """
        await conn.execute(
            f"""INSERT INTO {self._table} (exchange, instrument, last_sequence)
                VALUES ($1, $2, $3)
                ON CONFLICT (exchange, instrument) DO NOTHING""",
            partition.exchange,
            partition.instrument,
            START_SEQUENCE,
        )
        value = await conn.fetchval(
            f"""SELECT last_sequence FROM {self._table}
                WHERE exchange=$1 AND instrument=$2
                FOR UPDATE""",
            partition.exchange,
            partition.instrument,
        )
        return int(value)

    async def advance(
        self, conn: asyncpg.Connection, partition: PartitionKey, new_sequence: int
    ) -> None:
        """Move the watermark forward inside the caller's transaction.

        Raises:
            WatermarkRegressionError: If new_sequence is below the stored value
        """
        current = await conn.fetchval(
            f"""INSERT INTO {self._table} (exchange, instrument, last_sequence, updated_at)
                VALUES ($1, $2, $3, NOW())
                ON CONFLICT (exchange, instrument) DO UPDATE
                SET last_sequence = EXCLUDED.last_sequence,
                    updated_at = NOW()
                WHERE {self._table}.last_sequence <= EXCLUDED.last_sequence
                RETURNING last_sequence""",
            partition.exchange,
            partition.instrument,
            new_sequence,
        )
        if current is None:
            stored = await conn.fetchval(
                f"""SELECT last_sequence FROM {self._table}
                    WHERE exchange=$1 AND instrument=$2""",
                partition.exchange,
                partition.instrument,
            )
            raise WatermarkRegressionError(
                f"Refusing to move watermark back from {stored} to {new_sequence}",
                current=int(stored),
                requested=new_sequence,
                partition=partition,
            )
        logger.debug(f"[{partition}] watermark -> {new_sequence}")

    async def list_all(self) -> list[Watermark]:
        """Get all watermarks, ordered by partition."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT exchange, instrument, last_sequence, updated_at
                    FROM {self._table}
                    ORDER BY exchange, instrument"""
            )
        return [
            Watermark(
                exchange=row["exchange"],
                instrument=row["instrument"],
                last_sequence=row["last_sequence"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]
