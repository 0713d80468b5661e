"""Aggregation engine: reduce executions sharing a timestamp into one row.

Aggregation rules, per (timestamp, side) group:
- volume_sum: sum of volumes
- trade_count: number of contributing executions
- open/close: price of the first/last execution in sequence order
- high/low: max/min price
- avg: mean of contributor prices

The batch is walked once in sequence order, so the smaller sequence always
counts as earlier when two executions share (timestamp, side). Output is a
pure function of the batch: re-running it over the same rows yields the
same AggregatedRows in the same order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, localcontext

from compactor.core.errors import MalformedExecutionError
from compactor.models import AggregatedRow, PartitionKey, RawExecution, Side

logger = logging.getLogger(__name__)

# Mean prices carry more digits than the encoder keeps; quantization happens there
_AVG_CONTEXT_DIGITS = 28


@dataclass(slots=True)
class Accumulator:
    """In-progress reduction of one (timestamp, side) group."""

    timestamp: datetime
    side: Side
    first_sequence: int
    last_sequence: int
    trade_count: int
    volume_sum: Decimal
    price_sum: Decimal
    price_open: Decimal
    price_high: Decimal
    price_low: Decimal
    price_close: Decimal

    @classmethod
    def start(cls, row: RawExecution, side: Side) -> Accumulator:
        return cls(
            timestamp=row.timestamp,
            side=side,
            first_sequence=row.sequence,
            last_sequence=row.sequence,
            trade_count=1,
            volume_sum=row.volume,
            price_sum=row.price,
            price_open=row.price,
            price_high=row.price,
            price_low=row.price,
            price_close=row.price,
        )

    def add(self, row: RawExecution) -> None:
        """Fold the next execution of the group (must come in sequence order)."""
        self.trade_count += 1
        self.volume_sum += row.volume
        self.price_sum += row.price
        self.price_close = row.price  # last one wins
        self.last_sequence = row.sequence
        if row.price > self.price_high:
            self.price_high = row.price
        if row.price < self.price_low:
            self.price_low = row.price

    def to_row(self, partition: PartitionKey) -> AggregatedRow:
        return AggregatedRow(
            partition=partition,
            timestamp=self.timestamp,
            side=self.side,
            trade_count=self.trade_count,
            volume_sum=self.volume_sum,
            price_open=self.price_open,
            price_high=self.price_high,
            price_low=self.price_low,
            price_close=self.price_close,
            price_avg=_mean(self.price_sum, self.trade_count),
            first_sequence=self.first_sequence,
            last_sequence=self.last_sequence,
        )


def _mean(total: Decimal, count: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _AVG_CONTEXT_DIGITS
        return total / Decimal(count)


def _is_finite(value: Decimal | None) -> bool:
    return value is not None and value.is_finite()


def validate_batch(
    rows: list[RawExecution],
    after_sequence: int,
    side_aware: bool = True,
) -> None:
    """Check the ordering and completeness invariants of a fetched batch.

    Raises:
        MalformedExecutionError: on the first violating row. Rows are never
            skipped: skipping would drop them for good once the watermark
            moves past them.
    """
    if not rows:
        return

    partition = rows[0].partition
    seq_range = (rows[0].sequence, rows[-1].sequence)
    prev_sequence = after_sequence
    prev_timestamp: datetime | None = None

    for row in rows:
        def fail(reason: str) -> MalformedExecutionError:
            return MalformedExecutionError(
                f"{reason} at sequence {row.sequence}",
                sequence=row.sequence,
                partition=partition,
                sequence_range=seq_range,
            )

        if row.partition != partition:
            raise fail(f"row belongs to partition {row.partition}")
        if row.sequence <= prev_sequence:
            raise fail(f"sequence not above {prev_sequence}")
        if row.timestamp is None:
            raise fail("missing timestamp")
        if prev_timestamp is not None and row.timestamp < prev_timestamp:
            raise fail(f"timestamp {row.timestamp.isoformat()} before {prev_timestamp.isoformat()}")
        if not _is_finite(row.price):
            raise fail(f"missing or non-finite price ({row.price!r})")
        if not _is_finite(row.volume):
            raise fail(f"missing or non-finite volume ({row.volume!r})")
        if side_aware and row.side is None:
            raise fail("missing or unrecognised side")

        prev_sequence = row.sequence
        prev_timestamp = row.timestamp


def reduce_batch(
    rows: list[RawExecution],
    side_aware: bool = True,
    after_sequence: int | None = None,
) -> list[AggregatedRow]:
    """Reduce a sequence-ordered batch into one row per (timestamp, side).

    Args:
        rows: Executions of one partition, ascending by sequence
        side_aware: Key groups by side; when False every row counts as Side.NONE
        after_sequence: Watermark the batch was fetched above (for validation)

    Returns:
        Aggregated rows sorted by (timestamp, side); empty for an empty batch
    """
    if not rows:
        return []

    validate_batch(
        rows,
        after_sequence if after_sequence is not None else rows[0].sequence - 1,
        side_aware=side_aware,
    )

    partition = rows[0].partition
    groups: dict[tuple[datetime, Side], Accumulator] = {}

    for row in rows:
        side = row.side if side_aware else Side.NONE
        key = (row.timestamp, side)
        acc = groups.get(key)
        if acc is None:
            groups[key] = Accumulator.start(row, side)
        else:
            acc.add(row)

    result = [
        groups[key].to_row(partition)
        for key in sorted(groups, key=lambda k: (k[0], k[1].value))
    ]

    logger.debug(
        f"Reduced {len(rows)} executions to {len(result)} rows for {partition} "
        f"(sequences {rows[0].sequence}..{rows[-1].sequence})"
    )
    return result


def trim_open_group(rows: list[RawExecution]) -> list[RawExecution]:
    """Drop the trailing timestamp group of a batch.

    Used when the source holds nothing newer than the batch's last
    timestamp: the downloader may still append executions with that
    timestamp, so committing the group now could split it across cycles.
    """
    if not rows:
        return rows

    last_timestamp = rows[-1].timestamp
    cut = len(rows)
    while cut > 0 and rows[cut - 1].timestamp == last_timestamp:
        cut -= 1
    return rows[:cut]
