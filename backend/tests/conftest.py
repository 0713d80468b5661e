"""Shared fixtures: an in-memory stand-in for the compactor's tables.

FakePool/FakeConnection give the commit coordinator a real transaction
boundary: state is snapshotted on entry and restored if the block raises,
so atomicity and crash-safety can be checked without PostgreSQL.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from compactor.core.encoding import BulkEncoder, decode_payload
from compactor.core.errors import DuplicateAggregateError, WatermarkRegressionError
from compactor.models import START_SEQUENCE, AggregatedRow, PartitionKey, RawExecution
from compactor.services.commit_coordinator import CommitCoordinator
from compactor.services.pipeline import PartitionPipeline


class FakeStore:
    """Source rows, destination rows and watermarks of one fake database."""

    def __init__(self):
        self.source: dict[PartitionKey, list[RawExecution]] = defaultdict(list)
        self.watermarks: dict[PartitionKey, int] = {}
        self.destination: dict[tuple, AggregatedRow] = {}
        self.commits = 0
        self.rollbacks = 0

    def add_source(self, rows: list[RawExecution]) -> None:
        for row in rows:
            self.source[row.partition].append(row)

    def destination_rows(self, partition: PartitionKey) -> list[AggregatedRow]:
        rows = [r for r in self.destination.values() if r.partition == partition]
        return sorted(rows, key=lambda r: (r.timestamp, r.side.value))


class FakeTransaction:
    def __init__(self, store: FakeStore):
        self.store = store
        self._snapshot = None

    async def __aenter__(self):
        self._snapshot = (dict(self.store.watermarks), dict(self.store.destination))
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.store.watermarks, self.store.destination = self._snapshot
            self.store.rollbacks += 1
        else:
            self.store.commits += 1
        return False


class FakeConnection:
    def __init__(self, store: FakeStore):
        self.store = store

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self.store)


class FakePool:
    def __init__(self, store: FakeStore):
        self.store = store
        self.acquired = 0

    @asynccontextmanager
    async def acquire(self):
        self.acquired += 1
        yield FakeConnection(self.store)


class FakeWatermarkRepo:
    """Same contract as WatermarkRepository, backed by FakeStore."""

    def __init__(self, store: FakeStore):
        self.store = store
        self.fail_advance: Exception | None = None

    async def get(self, partition):
        return self.store.watermarks.get(partition)

    async def lock(self, conn, partition):
        return conn.store.watermarks.setdefault(partition, START_SEQUENCE)

    async def advance(self, conn, partition, new_sequence):
        if self.fail_advance is not None:
            raise self.fail_advance
        current = conn.store.watermarks.get(partition, START_SEQUENCE)
        if new_sequence < current:
            raise WatermarkRegressionError(
                "regression", current=current, requested=new_sequence, partition=partition
            )
        conn.store.watermarks[partition] = new_sequence

    async def list_all(self):
        return []


class FakeWriter:
    """Decodes the staged payload and inserts rows, rejecting duplicate keys."""

    def __init__(self, store: FakeStore):
        self.store = store
        self.loads = 0
        self.delay = 0.0
        self.count_offset = 0
        self.staged_paths: list[Path] = []

    async def bulk_load(self, conn, source, columns):
        self.loads += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(source, Path):
            self.staged_paths.append(source)
            data = source.read_bytes()
        else:
            data = source.read()
        rows = decode_payload(data)
        for row in rows:
            if row.natural_key in conn.store.destination:
                raise DuplicateAggregateError(f"key {row.natural_key} exists")
            conn.store.destination[row.natural_key] = row
        return len(rows) + self.count_offset


class FakeReader:
    """Serves FakeStore.source with the same paging rules as RawExecutionReader."""

    side_aware = True

    def __init__(self, store: FakeStore):
        self.store = store
        self.fail: Exception | None = None
        self.fetches = 0

    async def fetch(self, partition, after_sequence, max_rows):
        self.fetches += 1
        if self.fail is not None:
            raise self.fail
        rows = [r for r in self.store.source[partition] if r.sequence > after_sequence]
        page = rows[:max_rows]
        if page and len(page) == max_rows:
            last = page[-1].timestamp
            page += [r for r in rows[max_rows:] if r.timestamp == last]
        return page

    async def has_successor(self, partition, sequence):
        rows = self.store.source[partition]
        anchor = next(r for r in rows if r.sequence == sequence)
        return any(r.sequence > sequence and r.timestamp > anchor.timestamp for r in rows)

    async def discover_partitions(self):
        return sorted(k for k, v in self.store.source.items() if v)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pool(store):
    return FakePool(store)


@pytest.fixture
def watermarks(store):
    return FakeWatermarkRepo(store)


@pytest.fixture
def writer(store):
    return FakeWriter(store)


@pytest.fixture
def reader(store):
    return FakeReader(store)


@pytest.fixture
def coordinator(pool, watermarks, writer):
    return CommitCoordinator(pool, watermarks, writer, commit_timeout=5.0)


@pytest.fixture
def pipeline(reader, watermarks, coordinator):
    return PartitionPipeline(
        reader,
        watermarks,
        coordinator,
        BulkEncoder(),
        batch_max_rows=100,
        seal_trailing_group=False,
    )


@pytest.fixture
def make_pipeline():
    """Build a pipeline over its own fresh FakeStore."""

    def _make(batch_max_rows: int = 100) -> tuple[PartitionPipeline, FakeStore]:
        fresh = FakeStore()
        watermarks = FakeWatermarkRepo(fresh)
        coordinator = CommitCoordinator(
            FakePool(fresh), watermarks, FakeWriter(fresh), commit_timeout=5.0
        )
        pipeline = PartitionPipeline(
            FakeReader(fresh),
            watermarks,
            coordinator,
            BulkEncoder(),
            batch_max_rows=batch_max_rows,
            seal_trailing_group=False,
        )
        return pipeline, fresh

    return _make
