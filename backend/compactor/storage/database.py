"""PostgreSQL access for the compactor.

Manages a single asyncpg connection pool shared by the raw reader, the
destination writer, the watermark store and the lease store. Creates the
tables the compactor owns; the raw execution table belongs to the
downloader and is only read.
"""

from __future__ import annotations

import asyncio
import logging

import asyncpg
from asyncpg import exceptions as pg

from compactor.config import CompactorSettings, quote_identifier
from compactor.core.errors import CompactorError, FatalConfigError, TransientError

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS {target} (
    exchange        TEXT NOT NULL,
    instrument      TEXT NOT NULL,
    traded_at       TIMESTAMPTZ NOT NULL,
    side            VARCHAR(8) NOT NULL,
    trade_count     INTEGER NOT NULL,
    volume_sum      NUMERIC(38,{volume_scale}) NOT NULL,
    price_open      NUMERIC(30,{price_scale}) NOT NULL,
    price_high      NUMERIC(30,{price_scale}) NOT NULL,
    price_low       NUMERIC(30,{price_scale}) NOT NULL,
    price_close     NUMERIC(30,{price_scale}) NOT NULL,
    price_avg       NUMERIC(30,{price_scale}) NOT NULL,
    first_sequence  BIGINT NOT NULL,
    last_sequence   BIGINT NOT NULL,
    PRIMARY KEY (exchange, instrument, traded_at, side)
);

CREATE INDEX IF NOT EXISTS {target_seq_index}
    ON {target} (exchange, instrument, last_sequence);

CREATE TABLE IF NOT EXISTS {watermarks} (
    exchange        TEXT NOT NULL,
    instrument      TEXT NOT NULL,
    last_sequence   BIGINT NOT NULL DEFAULT 0,
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (exchange, instrument)
);

CREATE TABLE IF NOT EXISTS {leases} (
    exchange        TEXT NOT NULL,
    instrument      TEXT NOT NULL,
    owner           TEXT NOT NULL,
    expires_at      TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (exchange, instrument)
);
"""

# Retrying cannot fix these: wrong table/column names, credentials, database
FATAL_DB_ERRORS: tuple[type[BaseException], ...] = (
    pg.UndefinedTableError,
    pg.UndefinedColumnError,
    pg.InvalidPasswordError,
    pg.InvalidAuthorizationSpecificationError,
    pg.InvalidCatalogNameError,
    pg.InsufficientPrivilegeError,
)

TRANSIENT_DB_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    pg.PostgresConnectionError,
    pg.InterfaceError,
    pg.TooManyConnectionsError,
    pg.CannotConnectNowError,
    pg.AdminShutdownError,
    pg.SerializationError,
    pg.DeadlockDetectedError,
    pg.LockNotAvailableError,
    pg.QueryCanceledError,
)


def classify_db_error(
    exc: BaseException,
    transient_cls: type[TransientError],
    message: str,
    **context,
) -> CompactorError | None:
    """Map an asyncpg/OS error onto the pipeline's error taxonomy.

    Returns None for errors that are neither clearly fatal nor transient;
    callers re-raise those unchanged.
    """
    if isinstance(exc, CompactorError):
        return exc
    if isinstance(exc, FATAL_DB_ERRORS):
        return FatalConfigError(
            f"{message}: {type(exc).__name__}: {exc}",
            details={k: str(v) for k, v in context.items()},
        )
    if isinstance(exc, TRANSIENT_DB_ERRORS):
        return transient_cls(f"{message}: {type(exc).__name__}: {exc}", **context)
    return None


class CompactorDatabase:
    """Asyncpg connection pool plus DDL for the owned tables."""

    def __init__(self, settings: CompactorSettings):
        self._settings = settings
        self._pool: asyncpg.Pool | None = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._pool

    async def init(self) -> None:
        """Create the connection pool."""
        try:
            self._pool = await asyncpg.create_pool(
                self._settings.database_url,
                min_size=self._settings.pool_min_size,
                max_size=self._settings.pool_max_size,
                command_timeout=max(
                    self._settings.fetch_timeout, self._settings.commit_timeout
                ),
            )
        except FATAL_DB_ERRORS + TRANSIENT_DB_ERRORS as e:
            raise FatalConfigError(
                f"Cannot connect to database: {type(e).__name__}: {e}"
            ) from e
        logger.info(
            f"Database pool ready (min={self._settings.pool_min_size}, "
            f"max={self._settings.pool_max_size})"
        )

    def schema_sql(self) -> str:
        s = self._settings
        return SCHEMA_SQL.format(
            target=quote_identifier(s.target_table),
            target_seq_index=quote_identifier(f"idx_{s.target_table}_last_sequence"),
            watermarks=quote_identifier(s.watermark_table),
            leases=quote_identifier(s.lease_table),
            price_scale=s.price_scale,
            volume_scale=s.volume_scale,
        )

    async def create_tables(self) -> None:
        """Create destination, watermark and lease tables if missing."""
        async with self.pool.acquire() as conn:
            await conn.execute(self.schema_sql())
        logger.info(
            f"Tables ready: {self._settings.target_table}, "
            f"{self._settings.watermark_table}, {self._settings.lease_table}"
        )

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
