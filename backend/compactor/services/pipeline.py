"""One fetch-reduce-encode-commit cycle for a single partition.

State machine per partition:

    Idle -> Fetching -> Reducing -> Committing -> Idle
    Idle -> Fetching -> Idle                      (empty fetch)

Cancellation is checked before the fetch and before the commit; once the
commit transaction is open it runs to completion.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum

from compactor.core.aggregation import reduce_batch, trim_open_group, validate_batch
from compactor.core.encoding import BulkEncoder
from compactor.models import (
    START_SEQUENCE,
    Batch,
    CommitOutcome,
    CycleResult,
    CycleStatus,
    PartitionKey,
)
from compactor.services.commit_coordinator import CommitCoordinator
from compactor.storage.raw_reader import RawExecutionReader
from compactor.storage.watermark_repo import WatermarkRepository

logger = logging.getLogger(__name__)


class PartitionState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    REDUCING = "reducing"
    COMMITTING = "committing"
    BACKOFF = "backoff"
    HALTED = "halted"


StateCallback = Callable[[PartitionKey, PartitionState], None]


class PartitionPipeline:
    """Runs single cycles; the scheduler decides when and how often."""

    def __init__(
        self,
        reader: RawExecutionReader,
        watermarks: WatermarkRepository,
        coordinator: CommitCoordinator,
        encoder: BulkEncoder,
        batch_max_rows: int = 100_000,
        seal_trailing_group: bool = True,
        seal_grace_seconds: float = 300.0,
        batch_rows_for: Callable[[PartitionKey, int], int] | None = None,
        on_state: StateCallback | None = None,
    ):
        self._reader = reader
        self._watermarks = watermarks
        self._coordinator = coordinator
        self._encoder = encoder
        self.batch_max_rows = batch_max_rows
        self.seal_trailing_group = seal_trailing_group
        self.seal_grace = timedelta(seconds=seal_grace_seconds)
        self.clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
        self._batch_rows_for = batch_rows_for
        self.on_state = on_state

    def _state(self, partition: PartitionKey, state: PartitionState) -> None:
        if self.on_state is not None:
            self.on_state(partition, state)

    def max_rows_for(self, partition: PartitionKey) -> int:
        if self._batch_rows_for is None:
            return self.batch_max_rows
        return self._batch_rows_for(partition, self.batch_max_rows)

    def is_recent(self, timestamp: datetime) -> bool:
        """Whether a timestamp group may still receive executions.

        Groups older than the grace period are sealed even without a
        successor, so an idle partition still commits its last group.
        """
        return self.clock() - timestamp < self.seal_grace

    async def run_cycle(
        self,
        partition: PartitionKey,
        should_stop: Callable[[], bool] | None = None,
    ) -> CycleResult:
        """Process the next batch of a partition.

        Errors propagate to the caller with the state left where it failed;
        nothing is committed unless the commit coordinator succeeds.
        """
        stopping = should_stop or (lambda: False)

        stored = await self._watermarks.get(partition)
        after = START_SEQUENCE if stored is None else stored

        def result(status: CycleStatus, watermark: int = after, raw: int = 0, agg: int = 0):
            return CycleResult(
                partition=partition,
                status=status,
                watermark_before=after,
                watermark_after=watermark,
                raw_rows=raw,
                aggregated_rows=agg,
            )

        if stopping():
            return result(CycleStatus.CANCELLED)

        self._state(partition, PartitionState.FETCHING)
        rows = await self._reader.fetch(partition, after, self.max_rows_for(partition))
        if not rows:
            self._state(partition, PartitionState.IDLE)
            logger.debug(f"[{partition}] Nothing above watermark {after}")
            return result(CycleStatus.EMPTY)

        self._state(partition, PartitionState.REDUCING)
        side_aware = self._reader.side_aware
        validate_batch(rows, after, side_aware=side_aware)

        if (
            self.seal_trailing_group
            and self.is_recent(rows[-1].timestamp)
            and not await self._reader.has_successor(partition, rows[-1].sequence)
        ):
            rows = trim_open_group(rows)
            if not rows:
                self._state(partition, PartitionState.IDLE)
                logger.debug(
                    f"[{partition}] Holding back open timestamp group above {after}"
                )
                return result(CycleStatus.HELD_BACK)

        batch = Batch(partition=partition, after_sequence=after, rows=rows)
        aggregated = reduce_batch(rows, side_aware=side_aware, after_sequence=after)
        payload = self._encoder.encode(batch, aggregated)

        if stopping():
            self._state(partition, PartitionState.IDLE)
            return result(CycleStatus.CANCELLED)

        self._state(partition, PartitionState.COMMITTING)
        commit = await self._coordinator.commit(batch, payload)
        self._state(partition, PartitionState.IDLE)

        if commit.outcome is CommitOutcome.ALREADY_COMMITTED:
            return result(CycleStatus.ALREADY_COMMITTED, watermark=commit.watermark, raw=len(batch))
        return result(
            CycleStatus.COMMITTED,
            watermark=commit.watermark,
            raw=len(batch),
            agg=commit.rows_loaded,
        )
