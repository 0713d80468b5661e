"""Aggregated output models (hot path)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from compactor.models.execution import PartitionKey, Side


@dataclass(frozen=True, slots=True)
class AggregatedRow:
    """One destination row per distinct (partition, timestamp, side).

    Open/close follow sequence order within the group; avg is the plain
    mean of contributor prices.
    """

    partition: PartitionKey
    timestamp: datetime
    side: Side
    trade_count: int
    volume_sum: Decimal
    price_open: Decimal
    price_high: Decimal
    price_low: Decimal
    price_close: Decimal
    price_avg: Decimal
    first_sequence: int
    last_sequence: int

    @property
    def natural_key(self) -> tuple[str, str, datetime, str]:
        return (
            self.partition.exchange,
            self.partition.instrument,
            self.timestamp,
            self.side.value,
        )


@dataclass(frozen=True, slots=True)
class BulkPayload:
    """Encoded COPY payload for one batch.

    first/last_sequence describe the source batch, not the encoded rows,
    so the coordinator can advance the watermark from the payload alone.
    """

    partition: PartitionKey
    columns: tuple[str, ...]
    data: bytes
    row_count: int
    first_sequence: int
    last_sequence: int
    checksum: str

    @property
    def size_bytes(self) -> int:
        return len(self.data)
