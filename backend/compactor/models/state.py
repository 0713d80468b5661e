"""Persisted state and cycle outcome models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from compactor.models.execution import PartitionKey


class Watermark(BaseModel):
    """Last raw sequence durably aggregated for a partition.

    Only ever advanced inside the same transaction as the destination
    COPY; it is the single source of truth for committed progress.
    """

    model_config = ConfigDict(frozen=True)

    exchange: str
    instrument: str
    last_sequence: int
    updated_at: datetime | None = None

    @property
    def partition(self) -> PartitionKey:
        return PartitionKey(self.exchange, self.instrument)


class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    # A previous attempt already committed this batch
    ALREADY_COMMITTED = "already_committed"


@dataclass(slots=True)
class CommitResult:
    partition: PartitionKey
    outcome: CommitOutcome
    rows_loaded: int
    watermark: int


class CycleStatus(str, Enum):
    COMMITTED = "committed"
    ALREADY_COMMITTED = "already_committed"
    EMPTY = "empty"
    # Only an open trailing timestamp group was available
    HELD_BACK = "held_back"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class CycleResult:
    """Outcome of one fetch-reduce-commit cycle."""

    partition: PartitionKey
    status: CycleStatus
    watermark_before: int
    watermark_after: int
    raw_rows: int = 0
    aggregated_rows: int = 0

    @property
    def made_progress(self) -> bool:
        return self.watermark_after > self.watermark_before
