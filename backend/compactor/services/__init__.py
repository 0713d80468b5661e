"""Pipeline services."""

from compactor.services.commit_coordinator import CommitCoordinator
from compactor.services.pipeline import PartitionPipeline, PartitionState
from compactor.services.scheduler import Backoff, PartitionScheduler, PartitionStatus
from compactor.services.verifier import ConsistencyVerifier, VerificationReport

__all__ = [
    "CommitCoordinator",
    "PartitionPipeline",
    "PartitionState",
    "Backoff",
    "PartitionScheduler",
    "PartitionStatus",
    "ConsistencyVerifier",
    "VerificationReport",
]
