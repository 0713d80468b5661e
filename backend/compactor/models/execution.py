"""Raw execution models (hot path).

These models use @dataclass(slots=True) like the other hot path records.
Prices and volumes stay Decimal: aggregation must be byte-for-byte
reproducible, and asyncpg returns NUMERIC columns as Decimal natively.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

# Watermark value meaning "nothing aggregated yet"
START_SEQUENCE = 0

# Instrument placeholder for sources without an instrument column
ALL_INSTRUMENTS = "*"


@dataclass(frozen=True, slots=True, order=True)
class PartitionKey:
    """Unit of independent progress tracking: (exchange, instrument)."""

    exchange: str
    instrument: str = ALL_INSTRUMENTS

    @classmethod
    def parse(cls, text: str) -> PartitionKey:
        """Parse "exchange/instrument" (or just "exchange")."""
        value = text.strip()
        if not value:
            raise ValueError("Empty partition key")

        exchange, sep, instrument = value.partition("/")
        exchange = exchange.strip()
        instrument = instrument.strip() if sep else ALL_INSTRUMENTS
        if not exchange or not instrument:
            raise ValueError(f"Invalid partition key: {text!r}")
        return cls(exchange=exchange, instrument=instrument)

    def __str__(self) -> str:
        return f"{self.exchange}/{self.instrument}"


class Side(str, Enum):
    """Taker side of an execution."""

    BUY = "buy"
    SELL = "sell"
    # Key used when the source schema carries no side column
    NONE = "none"

    @classmethod
    def parse(cls, value: object) -> Side | None:
        """Map a raw side value to a Side, or None if unrecognised.

        Booleans are read as Binance's is_buyer_maker flag: a buyer-maker
        trade was initiated by the seller.
        """
        if value is None:
            return None
        if isinstance(value, bool):
            return cls.SELL if value else cls.BUY
        if isinstance(value, cls):
            return value
        return _SIDE_ALIASES.get(str(value).strip().lower())


_SIDE_ALIASES = {
    "buy": Side.BUY,
    "b": Side.BUY,
    "bid": Side.BUY,
    "sell": Side.SELL,
    "s": Side.SELL,
    "ask": Side.SELL,
    "none": Side.NONE,
}


@dataclass(slots=True)
class RawExecution:
    """One trade execution as written by the downloader.

    price, volume and side may be None when the source row is malformed;
    the aggregation engine rejects such rows instead of skipping them.
    """

    partition: PartitionKey
    sequence: int
    timestamp: datetime
    price: Decimal | None
    volume: Decimal | None
    side: Side | None = None


@dataclass(slots=True)
class Batch:
    """Ordered working set fetched for one processing cycle."""

    partition: PartitionKey
    after_sequence: int  # Watermark observed when the batch was fetched
    rows: list[RawExecution] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rows

    @property
    def first_sequence(self) -> int | None:
        return self.rows[0].sequence if self.rows else None

    @property
    def last_sequence(self) -> int | None:
        """Highest sequence in the batch (rows are sequence-ordered)."""
        return self.rows[-1].sequence if self.rows else None

    @property
    def sequence_range(self) -> tuple[int, int] | None:
        if not self.rows:
            return None
        return (self.rows[0].sequence, self.rows[-1].sequence)

    def __len__(self) -> int:
        return len(self.rows)
