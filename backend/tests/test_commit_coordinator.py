"""Tests for the commit coordinator (atomic load + watermark advance)."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from compactor.core.aggregation import reduce_batch
from compactor.core.encoding import BulkEncoder
from compactor.core.errors import (
    BulkLoadMismatchError,
    CommitTimeoutError,
    ConsistencyError,
    PayloadEncodingError,
    StaleBatchError,
    TransientDestinationError,
)
from compactor.models import Batch, CommitOutcome, PartitionKey, RawExecution, Side
from compactor.services.commit_coordinator import CommitCoordinator

PARTITION = PartitionKey("bitflyer", "FX_BTC_JPY")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_batch(after: int = 0, partition: PartitionKey = PARTITION) -> Batch:
    """Three executions (two share a timestamp) right above `after`."""
    specs = [(100, "10", "2", Side.BUY), (100, "12", "3", Side.BUY), (105, "9", "1", Side.SELL)]
    rows = [
        RawExecution(
            partition=partition,
            sequence=after + i + 1,
            timestamp=T0 + timedelta(seconds=ts),
            price=Decimal(price),
            volume=Decimal(volume),
            side=side,
        )
        for i, (ts, price, volume, side) in enumerate(specs)
    ]
    return Batch(partition=partition, after_sequence=after, rows=rows)


def encode(batch: Batch):
    return BulkEncoder().encode(batch, reduce_batch(batch.rows, after_sequence=batch.after_sequence))


class TestCommit:
    """Normal commits and benign re-commits."""

    @pytest.mark.asyncio
    async def test_commit_loads_rows_and_advances_watermark(self, coordinator, store):
        batch = make_batch()

        result = await coordinator.commit(batch, encode(batch))

        assert result.outcome == CommitOutcome.COMMITTED
        assert result.rows_loaded == 2
        assert result.watermark == 3
        assert store.watermarks[PARTITION] == 3
        assert [r.trade_count for r in store.destination_rows(PARTITION)] == [2, 1]
        assert store.commits == 1

    @pytest.mark.asyncio
    async def test_recommit_is_acknowledged_without_loading(self, coordinator, store, writer):
        batch = make_batch()
        payload = encode(batch)

        await coordinator.commit(batch, payload)
        result = await coordinator.commit(batch, payload)

        assert result.outcome == CommitOutcome.ALREADY_COMMITTED
        assert result.rows_loaded == 0
        assert writer.loads == 1
        assert len(store.destination_rows(PARTITION)) == 2

    @pytest.mark.asyncio
    async def test_consecutive_batches(self, coordinator, store):
        first = make_batch(after=0)
        second = make_batch(after=3)
        # Move the second batch's timestamps past the first
        for row in second.rows:
            row.timestamp += timedelta(seconds=10)

        await coordinator.commit(first, encode(first))
        await coordinator.commit(second, encode(second))

        assert store.watermarks[PARTITION] == 6
        assert len(store.destination_rows(PARTITION)) == 4

    @pytest.mark.asyncio
    async def test_staging_file_removed(self, pool, watermarks, writer, tmp_path):
        coordinator = CommitCoordinator(pool, watermarks, writer, staging_dir=tmp_path)
        batch = make_batch()

        await coordinator.commit(batch, encode(batch))

        assert len(writer.staged_paths) == 1
        assert not writer.staged_paths[0].exists()
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_staging_file_removed_on_failure(self, pool, watermarks, writer, tmp_path):
        coordinator = CommitCoordinator(pool, watermarks, writer, staging_dir=tmp_path)
        writer.count_offset = 1
        batch = make_batch()

        with pytest.raises(BulkLoadMismatchError):
            await coordinator.commit(batch, encode(batch))

        assert list(tmp_path.iterdir()) == []


class TestWatermarkChecks:
    """The locked watermark decides whether a batch may be loaded."""

    @pytest.mark.asyncio
    async def test_stale_batch(self, coordinator, store, writer):
        store.watermarks[PARTITION] = 2
        batch = make_batch(after=0)

        with pytest.raises(StaleBatchError) as exc_info:
            await coordinator.commit(batch, encode(batch))

        assert exc_info.value.sequence_range == (1, 3)
        assert writer.loads == 0
        assert store.watermarks[PARTITION] == 2

    @pytest.mark.asyncio
    async def test_watermark_behind_batch_is_consistency_error(self, coordinator, store):
        store.watermarks[PARTITION] = 3
        batch = make_batch(after=5)

        with pytest.raises(ConsistencyError):
            await coordinator.commit(batch, encode(batch))

        assert store.watermarks[PARTITION] == 3
        assert store.destination == {}


class TestAtomicity:
    """Load and watermark advance become visible together or not at all."""

    @pytest.mark.asyncio
    async def test_failure_after_load_rolls_back_both(self, coordinator, store, watermarks):
        watermarks.fail_advance = ConnectionResetError("connection reset by peer")
        batch = make_batch()

        with pytest.raises(TransientDestinationError):
            await coordinator.commit(batch, encode(batch))

        assert store.destination == {}
        assert PARTITION not in store.watermarks
        assert store.rollbacks == 1

    @pytest.mark.asyncio
    async def test_retry_after_crash_commits_exactly_once(self, coordinator, store, watermarks):
        watermarks.fail_advance = ConnectionResetError("connection reset by peer")
        batch = make_batch()
        payload = encode(batch)

        with pytest.raises(TransientDestinationError):
            await coordinator.commit(batch, payload)
        watermarks.fail_advance = None
        result = await coordinator.commit(batch, payload)

        assert result.outcome == CommitOutcome.COMMITTED
        assert store.watermarks[PARTITION] == 3
        assert sum(r.trade_count for r in store.destination_rows(PARTITION)) == 3

    @pytest.mark.asyncio
    async def test_row_count_mismatch_rolls_back(self, coordinator, store, writer):
        writer.count_offset = -1
        batch = make_batch()

        with pytest.raises(BulkLoadMismatchError) as exc_info:
            await coordinator.commit(batch, encode(batch))

        assert (exc_info.value.expected, exc_info.value.loaded) == (2, 1)
        assert store.destination == {}
        assert PARTITION not in store.watermarks

    @pytest.mark.asyncio
    async def test_payload_must_match_batch(self, coordinator):
        batch = make_batch()
        other = make_batch(partition=PartitionKey("liquid", "BTCJPY"))

        with pytest.raises(PayloadEncodingError):
            await coordinator.commit(batch, encode(other))


class TestDuplicateKeys:
    """Duplicate natural keys are benign only when the watermark covers the batch."""

    @pytest.mark.asyncio
    async def test_duplicate_covered_by_watermark_is_benign(self, coordinator, store, watermarks):
        batch = make_batch()
        payload = encode(batch)
        await coordinator.commit(batch, payload)
        # A lock that still reports the pre-commit value, as with a lagging replica
        watermarks.lock = AsyncMock(return_value=0)

        result = await coordinator.commit(batch, payload)

        assert result.outcome == CommitOutcome.ALREADY_COMMITTED
        assert result.watermark == 3
        assert len(store.destination_rows(PARTITION)) == 2

    @pytest.mark.asyncio
    async def test_duplicate_without_watermark_is_consistency_error(self, coordinator, store):
        batch = make_batch()
        row = reduce_batch(batch.rows)[0]
        store.destination[row.natural_key] = row

        with pytest.raises(ConsistencyError) as exc_info:
            await coordinator.commit(batch, encode(batch))

        assert exc_info.value.partition == PARTITION
        assert PARTITION not in store.watermarks
        assert len(store.destination) == 1


class TestTimeouts:
    """Timed-out commits are re-checked before anything is sent again."""

    @pytest.mark.asyncio
    async def test_timeout_then_retry_sees_committed_batch(self, pool, watermarks, writer, store):
        coordinator = CommitCoordinator(pool, watermarks, writer, commit_timeout=0.2)
        writer.delay = 0.3
        batch = make_batch()
        payload = encode(batch)

        with pytest.raises(CommitTimeoutError):
            await coordinator.commit(batch, payload)
        assert coordinator.has_inflight(PARTITION)

        result = await coordinator.commit(batch, payload)

        assert result.outcome == CommitOutcome.ALREADY_COMMITTED
        assert writer.loads == 1
        assert store.watermarks[PARTITION] == 3
        assert not coordinator.has_inflight(PARTITION)

    @pytest.mark.asyncio
    async def test_cancel_waits_for_open_transaction(self, pool, watermarks, writer, store):
        coordinator = CommitCoordinator(pool, watermarks, writer, commit_timeout=5.0)
        writer.delay = 0.2
        batch = make_batch()

        task = asyncio.create_task(coordinator.commit(batch, encode(batch)))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.watermarks[PARTITION] == 3
