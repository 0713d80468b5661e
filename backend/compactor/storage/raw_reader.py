"""Raw execution reader.

Reads the downloader's execution table(s) via the shared asyncpg pool.
Strictly read-only. Column and table names come from SourceSchema and are
validated identifiers, so they are interpolated into the SQL text; values
are always bound parameters.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import asyncpg

from compactor.config import SourceSchema, quote_identifier
from compactor.core.errors import TransientSourceError
from compactor.models import ALL_INSTRUMENTS, PartitionKey, RawExecution, Side
from compactor.storage.database import classify_db_error

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceSummary:
    """Totals over a partition's raw rows up to a sequence."""

    row_count: int
    volume_sum: Decimal
    max_sequence: int | None


def to_decimal(value: Any) -> Decimal | None:
    """Convert a driver value to Decimal; None if it is not a number."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return None
    try:
        # str() keeps the shortest repr of floats (0.1 -> "0.1")
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def to_utc(value: Any) -> datetime | None:
    """Normalize a timestamp column to an aware UTC datetime.

    Naive datetimes (TIMESTAMP WITHOUT TIME ZONE) are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return None


class RawExecutionReader:
    """Fetch raw executions above a watermark, ascending by sequence."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        schema: SourceSchema,
        exchanges: list[str] | None = None,
        fetch_timeout: float = 60.0,
    ):
        self._pool = pool
        self._schema = schema
        self._exchanges = list(exchanges or [])
        self._fetch_timeout = fetch_timeout

        s = schema
        self._seq = quote_identifier(s.sequence_column)
        self._ts = quote_identifier(s.timestamp_column)
        columns = [
            f"{self._seq} AS sequence",
            f"{self._ts} AS ts",
            f"{quote_identifier(s.price_column)} AS price",
            f"{quote_identifier(s.volume_column)} AS volume",
        ]
        if s.side_column:
            columns.append(f"{quote_identifier(s.side_column)} AS side")
        self._select = ", ".join(columns)

    @property
    def side_aware(self) -> bool:
        return self._schema.side_aware

    def _scope(self, partition: PartitionKey) -> tuple[str, list[str], list]:
        """Table, WHERE clauses and params selecting one partition's rows."""
        s = self._schema
        table = s.table_for(partition.exchange)
        clauses: list[str] = []
        params: list = []
        if s.exchange_column:
            params.append(partition.exchange)
            clauses.append(
                f"{quote_identifier(s.exchange_column)}=${len(params)}"
            )
        if s.instrument_column:
            params.append(partition.instrument)
            clauses.append(
                f"{quote_identifier(s.instrument_column)}=${len(params)}"
            )
        elif partition.instrument != ALL_INSTRUMENTS:
            raise ValueError(
                f"[{partition}] source has no instrument column, use {partition.exchange}/*"
            )
        return table, clauses, params

    async def _guarded(self, partition: PartitionKey | None, what: str, coro):
        """Run a query with the fetch timeout and map driver errors."""
        try:
            return await asyncio.wait_for(coro, timeout=self._fetch_timeout)
        except asyncio.TimeoutError as e:
            raise TransientSourceError(
                f"{what} timed out after {self._fetch_timeout}s", partition=partition
            ) from e
        except Exception as e:
            mapped = classify_db_error(
                e, TransientSourceError, f"{what} failed", partition=partition
            )
            if mapped is None:
                raise
            raise mapped from e

    def _to_execution(self, partition: PartitionKey, row) -> RawExecution:
        side = Side.parse(row["side"]) if self._schema.side_column else Side.NONE
        return RawExecution(
            partition=partition,
            sequence=int(row["sequence"]),
            timestamp=to_utc(row["ts"]),
            price=to_decimal(row["price"]),
            volume=to_decimal(row["volume"]),
            side=side,
        )

    async def fetch(
        self, partition: PartitionKey, after_sequence: int, max_rows: int
    ) -> list[RawExecution]:
        """Fetch up to max_rows executions with sequence > after_sequence.

        A full page is extended with every remaining row sharing the last
        row's timestamp, so a timestamp group never straddles two batches.
        Rows come back unvalidated; the aggregation engine checks them.
        """
        return await self._guarded(
            partition, "Raw fetch", self._fetch(partition, after_sequence, max_rows)
        )

    async def _fetch(
        self, partition: PartitionKey, after_sequence: int, max_rows: int
    ) -> list[RawExecution]:
        table, clauses, params = self._scope(partition)
        n = len(params)
        where = " AND ".join([*clauses, f"{self._seq} > ${n + 1}"])

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""SELECT {self._select} FROM {table}
                    WHERE {where}
                    ORDER BY {self._seq} ASC
                    LIMIT ${n + 2}""",
                *params,
                after_sequence,
                max_rows,
            )
            result = [self._to_execution(partition, row) for row in rows]

            if len(rows) == max_rows:
                last = rows[-1]
                tail_where = " AND ".join(
                    [*clauses, f"{self._seq} > ${n + 1}", f"{self._ts} = ${n + 2}"]
                )
                tail = await conn.fetch(
                    f"""SELECT {self._select} FROM {table}
                        WHERE {tail_where}
                        ORDER BY {self._seq} ASC""",
                    *params,
                    last["sequence"],
                    last["ts"],
                )
                if tail:
                    logger.debug(
                        f"[{partition}] extended page by {len(tail)} rows "
                        f"sharing timestamp {last['ts']}"
                    )
                result.extend(self._to_execution(partition, row) for row in tail)

        return result

    async def has_successor(self, partition: PartitionKey, sequence: int) -> bool:
        """Whether a row after `sequence` with a later timestamp already exists.

        The timestamp is compared in SQL so naive and aware columns behave
        the same.
        """
        table, clauses, params = self._scope(partition)
        n = len(params)
        anchor = " AND ".join([*clauses, f"{self._seq} = ${n + 1}"])
        where = " AND ".join([
            *clauses,
            f"{self._seq} > ${n + 1}",
            f"{self._ts} > (SELECT {self._ts} FROM {table} WHERE {anchor})",
        ])

        async def _query():
            async with self._pool.acquire() as conn:
                return await conn.fetchval(
                    f"SELECT EXISTS (SELECT 1 FROM {table} WHERE {where})",
                    *params,
                    sequence,
                )

        return bool(await self._guarded(partition, "Successor check", _query()))

    async def discover_partitions(self) -> list[PartitionKey]:
        """List every (exchange, instrument) present in the source."""
        keys = await self._guarded(None, "Partition discovery", self._discover())
        logger.info(f"Discovered {len(keys)} partitions in source")
        return sorted(keys)

    async def _discover(self) -> set[PartitionKey]:
        s = self._schema
        keys: set[PartitionKey] = set()

        async with self._pool.acquire() as conn:
            if s.is_per_exchange:
                for exchange in self._exchanges:
                    if not s.instrument_column:
                        keys.add(PartitionKey(exchange))
                        continue
                    rows = await conn.fetch(
                        f"""SELECT DISTINCT {quote_identifier(s.instrument_column)} AS instrument
                            FROM {s.table_for(exchange)}"""
                    )
                    keys.update(PartitionKey(exchange, r["instrument"]) for r in rows)
            else:
                exchange_col = quote_identifier(s.exchange_column)
                if s.instrument_column:
                    rows = await conn.fetch(
                        f"""SELECT DISTINCT {exchange_col} AS exchange,
                                   {quote_identifier(s.instrument_column)} AS instrument
                            FROM {s.table_for('')}"""
                    )
                    keys.update(PartitionKey(r["exchange"], r["instrument"]) for r in rows)
                else:
                    rows = await conn.fetch(
                        f"SELECT DISTINCT {exchange_col} AS exchange FROM {s.table_for('')}"
                    )
                    keys.update(PartitionKey(r["exchange"]) for r in rows)
        return keys

    async def summarize(self, partition: PartitionKey, up_to_sequence: int) -> SourceSummary:
        """Row count, volume sum and max sequence for rows <= up_to_sequence."""
        table, clauses, params = self._scope(partition)
        n = len(params)
        where = " AND ".join([*clauses, f"{self._seq} <= ${n + 1}"])
        volume = quote_identifier(self._schema.volume_column)

        async def _query():
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(
                    f"""SELECT COUNT(*) AS row_count,
                               COALESCE(SUM({volume}), 0) AS volume_sum,
                               MAX({self._seq}) AS max_sequence
                        FROM {table} WHERE {where}""",
                    *params,
                    up_to_sequence,
                )

        row = await self._guarded(partition, "Source summary", _query())
        return SourceSummary(
            row_count=int(row["row_count"]),
            volume_sum=to_decimal(row["volume_sum"]) or Decimal(0),
            max_sequence=None if row["max_sequence"] is None else int(row["max_sequence"]),
        )
