"""Data models."""

from compactor.models.execution import (
    ALL_INSTRUMENTS,
    START_SEQUENCE,
    Batch,
    PartitionKey,
    RawExecution,
    Side,
)
from compactor.models.aggregate import AggregatedRow, BulkPayload
from compactor.models.state import (
    CommitOutcome,
    CommitResult,
    CycleResult,
    CycleStatus,
    Watermark,
)

__all__ = [
    # Hot path (dataclass)
    "ALL_INSTRUMENTS",
    "START_SEQUENCE",
    "Batch",
    "PartitionKey",
    "RawExecution",
    "Side",
    "AggregatedRow",
    "BulkPayload",
    # Outcomes
    "CommitOutcome",
    "CommitResult",
    "CycleResult",
    "CycleStatus",
    # Persisted (Pydantic)
    "Watermark",
]
