"""Storage layer: source reader, destination writer, watermarks and leases.

All repositories share one asyncpg pool owned by CompactorDatabase.
"""

from compactor.storage.aggregate_writer import AggregateWriter, DestinationSummary
from compactor.storage.database import CompactorDatabase, classify_db_error
from compactor.storage.lease_repo import LeaseRepository
from compactor.storage.raw_reader import RawExecutionReader, SourceSummary
from compactor.storage.staging import stage_payload
from compactor.storage.watermark_repo import WatermarkRepository

__all__ = [
    "AggregateWriter",
    "DestinationSummary",
    "CompactorDatabase",
    "classify_db_error",
    "LeaseRepository",
    "RawExecutionReader",
    "SourceSummary",
    "stage_payload",
    "WatermarkRepository",
]
