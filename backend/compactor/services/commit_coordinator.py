"""Commit coordinator: bulk load + watermark advance as one unit.

The destination and the watermark table live in the same database, so a
single transaction on one pooled connection covers:

    lock watermark -> COPY payload -> check row count -> advance watermark

Either both effects are visible after commit or neither is. A batch whose
range the watermark already covers is acknowledged without loading, which
makes re-running a batch after a crash or a timed-out commit harmless.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import asyncpg

from compactor.core.errors import (
    BulkLoadMismatchError,
    CommitTimeoutError,
    ConsistencyError,
    DuplicateAggregateError,
    PayloadEncodingError,
    PipelineError,
    StaleBatchError,
    TransientDestinationError,
)
from compactor.models import Batch, BulkPayload, CommitOutcome, CommitResult, PartitionKey
from compactor.storage.aggregate_writer import AggregateWriter
from compactor.storage.database import classify_db_error
from compactor.storage.staging import stage_payload
from compactor.storage.watermark_repo import WatermarkRepository

logger = logging.getLogger(__name__)


class CommitCoordinator:
    """Atomically load a batch's payload and advance its partition watermark."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        watermarks: WatermarkRepository,
        writer: AggregateWriter,
        staging_dir: Path | None = None,
        commit_timeout: float = 120.0,
    ):
        self._pool = pool
        self._watermarks = watermarks
        self._writer = writer
        self._staging_dir = staging_dir
        self._commit_timeout = commit_timeout
        # Attempts whose outcome the caller never saw (timed out)
        self._inflight: dict[PartitionKey, asyncio.Task] = {}

    def has_inflight(self, partition: PartitionKey) -> bool:
        task = self._inflight.get(partition)
        return task is not None and not task.done()

    async def commit(self, batch: Batch, payload: BulkPayload) -> CommitResult:
        """Commit one batch.

        Returns:
            CommitResult with outcome COMMITTED, or ALREADY_COMMITTED when
            the watermark already covers the batch

        Raises:
            StaleBatchError: Watermark moved since the batch was fetched
            ConsistencyError: Watermark and destination disagree
            BulkLoadMismatchError: COPY loaded a different number of rows
            CommitTimeoutError: No outcome within commit_timeout
            TransientDestinationError: Connection-level failure
        """
        partition = batch.partition
        seq_range = batch.sequence_range

        if batch.is_empty:
            raise PayloadEncodingError("Refusing to commit an empty batch", partition=partition)
        if payload.partition != partition or payload.last_sequence != batch.last_sequence:
            raise PayloadEncodingError(
                f"Payload for {payload.partition} "
                f"{payload.first_sequence}..{payload.last_sequence} does not match batch",
                partition=partition,
                sequence_range=seq_range,
            )

        await self._settle(partition, seq_range)

        task = asyncio.ensure_future(self._attempt(batch, payload))
        self._inflight[partition] = task
        task.add_done_callback(lambda t, p=partition: self._forget(p, t))

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._commit_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(
                f"[{partition}] Commit of {seq_range[0]}..{seq_range[1]} "
                f"still open after {self._commit_timeout}s"
            )
            raise CommitTimeoutError(
                f"Outcome unknown after {self._commit_timeout}s",
                partition=partition,
                sequence_range=seq_range,
            ) from e
        except asyncio.CancelledError:
            # The transaction must resolve before anyone else touches the partition
            if not task.done():
                await asyncio.wait([task])
            raise

    async def _settle(self, partition: PartitionKey, seq_range: tuple[int, int]) -> None:
        """Wait for an earlier attempt whose outcome is still unknown."""
        task = self._inflight.get(partition)
        if task is None or task.done():
            return

        logger.info(f"[{partition}] Waiting for previous commit attempt to resolve")
        done, _ = await asyncio.wait([task], timeout=self._commit_timeout)
        if not done:
            raise CommitTimeoutError(
                "Previous commit attempt still unresolved",
                partition=partition,
                sequence_range=seq_range,
            )

    def _forget(self, partition: PartitionKey, task: asyncio.Task) -> None:
        if self._inflight.get(partition) is task:
            del self._inflight[partition]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"[{partition}] Commit attempt ended with {task.exception()!r}")

    async def _attempt(self, batch: Batch, payload: BulkPayload) -> CommitResult:
        partition = batch.partition
        seq_range = batch.sequence_range

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._watermarks.lock(conn, partition)

                    if current >= batch.last_sequence:
                        logger.info(
                            f"[{partition}] Batch {seq_range[0]}..{seq_range[1]} "
                            f"already committed (watermark {current})"
                        )
                        return CommitResult(
                            partition=partition,
                            outcome=CommitOutcome.ALREADY_COMMITTED,
                            rows_loaded=0,
                            watermark=current,
                        )
                    if current < batch.after_sequence:
                        raise ConsistencyError(
                            f"Watermark {current} is behind the batch start "
                            f"{batch.after_sequence}",
                            partition=partition,
                            sequence_range=seq_range,
                        )
                    if current != batch.after_sequence:
                        raise StaleBatchError(
                            f"Watermark moved from {batch.after_sequence} to {current}",
                            partition=partition,
                            sequence_range=seq_range,
                        )

                    with stage_payload(payload, self._staging_dir) as source:
                        loaded = await self._writer.bulk_load(conn, source, payload.columns)

                    if loaded != payload.row_count:
                        raise BulkLoadMismatchError(
                            f"COPY loaded {loaded} rows, payload has {payload.row_count}",
                            expected=payload.row_count,
                            loaded=loaded,
                            partition=partition,
                            sequence_range=seq_range,
                        )

                    await self._watermarks.advance(conn, partition, batch.last_sequence)

        except DuplicateAggregateError as e:
            return await self._resolve_duplicate(batch, e)
        except PipelineError as e:
            if e.partition is None:
                e.partition = partition
                e.sequence_range = seq_range
            raise
        except Exception as e:
            mapped = classify_db_error(
                e, TransientDestinationError, "Commit failed",
                partition=partition, sequence_range=seq_range,
            )
            if mapped is None:
                raise
            raise mapped from e

        logger.info(
            f"[{partition}] Committed {loaded} rows from {len(batch)} executions, "
            f"watermark {batch.after_sequence} -> {batch.last_sequence}"
        )
        return CommitResult(
            partition=partition,
            outcome=CommitOutcome.COMMITTED,
            rows_loaded=loaded,
            watermark=batch.last_sequence,
        )

    async def _resolve_duplicate(
        self, batch: Batch, error: DuplicateAggregateError
    ) -> CommitResult:
        """Decide whether a duplicate key means "already done" or corruption."""
        partition = batch.partition
        seq_range = batch.sequence_range
        current = await self._watermarks.get(partition)

        if current is not None and current >= batch.last_sequence:
            logger.warning(
                f"[{partition}] Duplicate keys for {seq_range[0]}..{seq_range[1]} "
                f"are covered by watermark {current}, treating as committed"
            )
            return CommitResult(
                partition=partition,
                outcome=CommitOutcome.ALREADY_COMMITTED,
                rows_loaded=0,
                watermark=current,
            )

        raise ConsistencyError(
            f"Destination already holds keys from this batch but watermark is "
            f"{current}: {error.message}",
            partition=partition,
            sequence_range=seq_range,
        ) from error
