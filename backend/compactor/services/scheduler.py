"""Partition scheduler: runs pipeline cycles across partitions.

- Bounded concurrency: at most max_workers cycles at once (asyncio.Semaphore)
- Strictly sequential cycles within a partition (one asyncio.Lock each,
  plus a database lease when several processes share the tables)
- Failures put only the failing partition into backoff
- FatalConfigError stops new cycles everywhere, lets in-flight cycles
  finish, then propagates
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from compactor.core.errors import (
    CompactorError,
    ConsistencyError,
    EncodingError,
    FatalConfigError,
    LeaseLostError,
    TransientError,
)
from compactor.models import CycleResult, CycleStatus, PartitionKey
from compactor.services.pipeline import PartitionPipeline, PartitionState
from compactor.storage.lease_repo import LeaseRepository

logger = logging.getLogger(__name__)

# Cycle outcomes meaning "caught up for now"
_IDLE_STATUSES = (CycleStatus.EMPTY, CycleStatus.HELD_BACK, CycleStatus.CANCELLED)


class Backoff:
    """Exponential backoff with proportional jitter, capped at maximum."""

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        multiplier: float = 2.0,
        jitter: float = 0.1,
        rng: Callable[[], float] = random.random,
    ):
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self._rng = rng

    def delay(self, failures: int) -> float:
        """Delay before the next attempt after `failures` consecutive failures."""
        if failures < 1:
            return 0.0
        base = min(self.initial * self.multiplier ** (failures - 1), self.maximum)
        if self.jitter:
            base *= 1 + self.jitter * (2 * self._rng() - 1)
        return min(base, self.maximum)


@dataclass(slots=True)
class PartitionStatus:
    """Live view of one partition for logs and --status."""

    partition: PartitionKey
    state: PartitionState = PartitionState.IDLE
    watermark: int | None = None
    consecutive_failures: int = 0
    last_error: str | None = None
    last_error_kind: str | None = None
    rows_committed: int = 0
    cycles: int = 0
    next_attempt_at: float = 0.0

    @property
    def healthy(self) -> bool:
        return self.consecutive_failures == 0


class PartitionScheduler:
    """Drive PartitionPipeline cycles over many partitions."""

    def __init__(
        self,
        pipeline: PartitionPipeline,
        backoff: Backoff | None = None,
        max_workers: int = 4,
        max_attempts: int = 5,
        poll_interval: float = 5.0,
        leases: LeaseRepository | None = None,
        discover: Callable[[], Awaitable[list[PartitionKey]]] | None = None,
    ):
        self._pipeline = pipeline
        self._backoff = backoff or Backoff()
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self._leases = leases
        self._discover = discover

        self._semaphore = asyncio.Semaphore(max_workers)
        self._locks: dict[PartitionKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._status: dict[PartitionKey, PartitionStatus] = {}
        self._stop = asyncio.Event()
        self._fatal: FatalConfigError | None = None

        pipeline.on_state = self._set_state

    # ── State ────────────────────────────────────────────────────

    @property
    def halted(self) -> bool:
        return self._fatal is not None

    def statuses(self) -> list[PartitionStatus]:
        return [self._status[p] for p in sorted(self._status)]

    def status(self, partition: PartitionKey) -> PartitionStatus:
        if partition not in self._status:
            self._status[partition] = PartitionStatus(partition=partition)
        return self._status[partition]

    def _set_state(self, partition: PartitionKey, state: PartitionState) -> None:
        self.status(partition).state = state

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    async def _sleep(self, delay: float) -> None:
        """Sleep, waking early on stop or halt."""
        if delay <= 0 or self._stop.is_set():
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    def _halt(self, error: FatalConfigError) -> None:
        if self._fatal is None:
            self._fatal = error
            logger.critical(f"Fatal error, halting all partitions: {error}")
        self._stop.set()

    # ── One cycle ────────────────────────────────────────────────

    async def run_once(self, partition: PartitionKey) -> CycleResult | None:
        """Run one cycle; None if it failed (status records the error)."""
        status = self.status(partition)

        async with self._semaphore:
            async with self._locks[partition]:
                if self.halted:
                    return None
                try:
                    if self._leases is not None and not await self._leases.claim(partition):
                        raise LeaseLostError("Partition leased by another process", partition=partition)
                    result = await self._pipeline.run_cycle(
                        partition, should_stop=self._stop.is_set
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._record_failure(partition, e)
                    return None

        status.cycles += 1
        status.watermark = result.watermark_after
        status.rows_committed += result.aggregated_rows
        status.consecutive_failures = 0
        status.last_error = None
        status.last_error_kind = None
        status.state = PartitionState.IDLE
        return result

    def _record_failure(self, partition: PartitionKey, error: Exception) -> None:
        status = self.status(partition)
        status.consecutive_failures += 1
        status.last_error = str(error)
        status.last_error_kind = (
            error.error_code.lower() if isinstance(error, CompactorError) else type(error).__name__
        )

        if isinstance(error, FatalConfigError):
            status.state = PartitionState.HALTED
            self._halt(error)
            return

        delay = self._backoff.delay(status.consecutive_failures)
        if isinstance(error, ConsistencyError):
            delay = self._backoff.maximum
            logger.critical(f"Manual reconciliation needed: {error}")
        elif isinstance(error, EncodingError):
            logger.error(f"Batch rejected, nothing skipped: {error}")
        elif isinstance(error, LeaseLostError):
            logger.info(f"{error}")
        elif isinstance(error, TransientError):
            logger.warning(f"{error} (attempt {status.consecutive_failures})")
        else:
            logger.exception(f"[{partition}] Unexpected error: {error}")

        status.state = PartitionState.BACKOFF
        status.next_attempt_at = self._now() + delay
        logger.info(f"[{partition}] Backing off {delay:.1f}s")

    async def _release(self, partition: PartitionKey) -> None:
        if self._leases is not None:
            await self._leases.release(partition)

    # ── Drain mode ───────────────────────────────────────────────

    async def drain(
        self,
        partitions: Iterable[PartitionKey],
        stop_event: asyncio.Event | None = None,
    ) -> list[PartitionStatus]:
        """Cycle every partition until it has nothing left to commit.

        A partition that fails max_attempts times in a row is given up on;
        its status keeps the last error.

        Raises:
            FatalConfigError: If any partition hit a fatal error
        """
        if stop_event is not None:
            self._stop = stop_event
        keys = list(partitions)
        for p in keys:
            self.status(p)

        logger.info(f"Draining {len(keys)} partitions with {self.max_workers} workers")
        await asyncio.gather(*(self._drain_partition(p) for p in keys))

        if self._fatal is not None:
            raise self._fatal
        return self.statuses()

    async def _drain_partition(self, partition: PartitionKey) -> None:
        status = self.status(partition)
        try:
            while not self._stop.is_set():
                result = await self.run_once(partition)
                if result is None:
                    if self.halted:
                        return
                    if status.consecutive_failures >= self.max_attempts:
                        logger.error(
                            f"[{partition}] Giving up after {status.consecutive_failures} "
                            f"attempts: {status.last_error}"
                        )
                        return
                    await self._sleep(status.next_attempt_at - self._now())
                elif result.status in _IDLE_STATUSES:
                    logger.info(
                        f"[{partition}] Drained at watermark {result.watermark_after} "
                        f"({status.rows_committed} rows committed)"
                    )
                    return
        finally:
            await self._release(partition)

    # ── Continuous mode ──────────────────────────────────────────

    async def run_forever(
        self,
        stop_event: asyncio.Event,
        partitions: Iterable[PartitionKey] | None = None,
    ) -> None:
        """Poll partitions until stop_event is set.

        With a discover callback, the partition set is refreshed every
        poll_interval and new partitions are picked up.

        Raises:
            FatalConfigError: If any partition hit a fatal error
        """
        self._stop = stop_event
        followers: dict[PartitionKey, asyncio.Task] = {}
        keys = list(partitions or [])

        try:
            while not self._stop.is_set():
                if self._discover is not None:
                    keys = await self._refresh(keys)
                for p in keys:
                    if p not in followers:
                        logger.info(f"[{p}] Scheduling partition")
                        followers[p] = asyncio.create_task(
                            self._follow(p), name=f"compactor-{p}"
                        )
                await self._sleep(self.poll_interval)
        finally:
            self._stop.set()
            if followers:
                await asyncio.gather(*followers.values(), return_exceptions=True)
            logger.info(f"Scheduler stopped ({len(followers)} partitions)")

        if self._fatal is not None:
            raise self._fatal

    async def _refresh(self, current: list[PartitionKey]) -> list[PartitionKey]:
        try:
            return await self._discover()
        except FatalConfigError as e:
            self._halt(e)
        except TransientError as e:
            logger.warning(f"Partition discovery failed, keeping current set: {e}")
        return current

    async def _follow(self, partition: PartitionKey) -> None:
        status = self.status(partition)
        try:
            while not self._stop.is_set():
                result = await self.run_once(partition)
                if result is None:
                    await self._sleep(status.next_attempt_at - self._now())
                elif result.status in _IDLE_STATUSES:
                    await self._release(partition)
                    await self._sleep(self.poll_interval)
        finally:
            await self._release(partition)
