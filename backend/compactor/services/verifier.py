"""Consistency verifier: compare source and destination per partition.

Up to the committed watermark, every raw execution must be counted in
exactly one aggregated row:

- source row count == SUM(trade_count)
- source volume sum == SUM(volume_sum), within rounding of the stored scale
- MAX(last_sequence) in the destination == last source sequence <= watermark
- no destination rows above the watermark
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

import asyncpg

from compactor.models import PartitionKey
from compactor.storage.aggregate_writer import AggregateWriter, DestinationSummary
from compactor.storage.raw_reader import RawExecutionReader, SourceSummary
from compactor.storage.watermark_repo import WatermarkRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class VerificationReport:
    partition: PartitionKey
    watermark: int | None
    source: SourceSummary | None = None
    destination: DestinationSummary | None = None
    discrepancies: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.discrepancies


class ConsistencyVerifier:
    """Read-only checks; never modifies the source or the destination."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        reader: RawExecutionReader,
        writer: AggregateWriter,
        watermarks: WatermarkRepository,
        volume_scale: int = 8,
    ):
        self._pool = pool
        self._reader = reader
        self._writer = writer
        self._watermarks = watermarks
        self._quantum = Decimal(1).scaleb(-volume_scale)

    async def verify(self, partition: PartitionKey) -> VerificationReport:
        watermark = await self._watermarks.get(partition)
        report = VerificationReport(partition=partition, watermark=watermark)

        loaded_max = await self._writer.max_sequence(self._pool, partition)
        if watermark is None:
            if loaded_max is not None:
                report.discrepancies.append(
                    f"destination holds rows up to sequence {loaded_max} but no watermark exists"
                )
            return report

        if loaded_max is not None and loaded_max > watermark:
            report.discrepancies.append(
                f"destination holds rows up to sequence {loaded_max}, above watermark {watermark}"
            )

        source = await self._reader.summarize(partition, watermark)
        dest = await self._writer.summarize(self._pool, partition, watermark)
        report.source = source
        report.destination = dest

        if source.row_count != dest.trade_count:
            report.discrepancies.append(
                f"source has {source.row_count} executions, destination counts {dest.trade_count}"
            )

        # Each stored row was rounded to the scale at most once
        tolerance = self._quantum / 2 * max(dest.row_count, 1)
        if abs(source.volume_sum - dest.volume_sum) > tolerance:
            report.discrepancies.append(
                f"volume mismatch: source {source.volume_sum}, destination {dest.volume_sum}"
            )

        if source.max_sequence != dest.max_sequence:
            report.discrepancies.append(
                f"last aggregated sequence {dest.max_sequence}, "
                f"last source sequence {source.max_sequence}"
            )

        if report.ok:
            logger.info(
                f"[{partition}] OK: {source.row_count} executions in "
                f"{dest.row_count} rows up to {watermark}"
            )
        else:
            for issue in report.discrepancies:
                logger.error(f"[{partition}] {issue}")
        return report

    async def verify_all(self, partitions: list[PartitionKey]) -> list[VerificationReport]:
        return [await self.verify(p) for p in partitions]
