"""Partition leases: one compactor process per partition at a time."""

from __future__ import annotations

import logging
import os
import socket
import uuid

import asyncpg

from compactor.config import quote_identifier
from compactor.core.errors import TransientDestinationError
from compactor.models import PartitionKey
from compactor.storage.database import classify_db_error

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class LeaseRepository:
    """Claim, renew and release partition leases.

    A claim succeeds when the lease is free, expired, or already ours;
    claiming again renews it.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        table: str = "aggregation_leases",
        owner: str | None = None,
        ttl: float = 300.0,
    ):
        self._pool = pool
        self._table = quote_identifier(table)
        self.owner = owner or default_owner()
        self.ttl = ttl

    async def claim(self, partition: PartitionKey) -> bool:
        try:
            async with self._pool.acquire() as conn:
                holder = await conn.fetchval(
                    f"""INSERT INTO {self._table} (exchange, instrument, owner, expires_at)
                        VALUES ($1, $2, $3, NOW() + make_interval(secs => $4))
                        ON CONFLICT (exchange, instrument) DO UPDATE
                        SET owner = EXCLUDED.owner,
                            expires_at = EXCLUDED.expires_at
                        WHERE {self._table}.owner = EXCLUDED.owner
                           OR {self._table}.expires_at < NOW()
                        RETURNING owner""",
                    partition.exchange,
                    partition.instrument,
                    self.owner,
                    float(self.ttl),
                )
        except Exception as e:
            mapped = classify_db_error(
                e, TransientDestinationError, "Lease claim failed", partition=partition
            )
            if mapped is None:
                raise
            raise mapped from e

        if holder is None:
            logger.debug(f"[{partition}] lease held by another process")
            return False
        return True

    async def release(self, partition: PartitionKey) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    f"""DELETE FROM {self._table}
                        WHERE exchange=$1 AND instrument=$2 AND owner=$3""",
                    partition.exchange,
                    partition.instrument,
                    self.owner,
                )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            # An unreleased lease simply expires after ttl
            logger.warning(f"[{partition}] lease release failed: {e}")
