"""Bulk encoder: aggregated rows -> PostgreSQL COPY text payload.

Format: one line per row, tab-separated fields, "\\N" for NULL, backslash
escapes for tab/newline/carriage return/backslash. Numerics are quantized
to a fixed scale and timestamps are written as ISO-8601 UTC with
microseconds, so the same rows always encode to the same bytes.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from compactor.core.errors import PayloadEncodingError
from compactor.models import AggregatedRow, Batch, BulkPayload, PartitionKey, Side

# Column order of the destination table as loaded by COPY
TARGET_COLUMNS: tuple[str, ...] = (
    "exchange",
    "instrument",
    "traded_at",
    "side",
    "trade_count",
    "volume_sum",
    "price_open",
    "price_high",
    "price_low",
    "price_close",
    "price_avg",
    "first_sequence",
    "last_sequence",
)

NULL = "\\N"

_ESCAPES = {
    "\\": "\\\\",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
}
_UNESCAPES = {
    "\\": "\\",
    "t": "\t",
    "n": "\n",
    "r": "\r",
}


def _escape(value: str) -> str:
    if not any(ch in value for ch in _ESCAPES):
        return value
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def _unescape(value: str) -> str:
    if "\\" not in value:
        return value
    out = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_UNESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def _sort_key(row: AggregatedRow) -> tuple[datetime, str]:
    return (row.timestamp, row.side.value)


class BulkEncoder:
    """Serialize aggregated rows into a self-contained COPY payload.

    Encoding is all-or-nothing: any row that cannot be represented raises
    PayloadEncodingError and no payload is produced.
    """

    def __init__(self, price_scale: int = 8, volume_scale: int = 8):
        self.price_scale = price_scale
        self.volume_scale = volume_scale
        self._price_quantum = Decimal(1).scaleb(-price_scale)
        self._volume_quantum = Decimal(1).scaleb(-volume_scale)

    def _decimal(self, value: Decimal, quantum: Decimal) -> str:
        if not isinstance(value, Decimal) or not value.is_finite():
            raise ValueError(f"not a finite decimal: {value!r}")
        return f"{value.quantize(quantum, rounding=ROUND_HALF_EVEN):f}"

    def _timestamp(self, value: datetime) -> str:
        if value.tzinfo is None:
            raise ValueError(f"naive timestamp: {value.isoformat()}")
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    def encode_row(self, row: AggregatedRow) -> str:
        price = self._price_quantum
        fields = [
            _escape(row.partition.exchange),
            _escape(row.partition.instrument),
            self._timestamp(row.timestamp),
            row.side.value,
            str(int(row.trade_count)),
            self._decimal(row.volume_sum, self._volume_quantum),
            self._decimal(row.price_open, price),
            self._decimal(row.price_high, price),
            self._decimal(row.price_low, price),
            self._decimal(row.price_close, price),
            self._decimal(row.price_avg, price),
            str(int(row.first_sequence)),
            str(int(row.last_sequence)),
        ]
        return "\t".join(fields)

    def encode(self, batch: Batch, rows: list[AggregatedRow]) -> BulkPayload:
        """Encode the reduced rows of a batch.

        Args:
            batch: Source batch (supplies partition and sequence range)
            rows: Output of the aggregation engine for that batch

        Returns:
            BulkPayload ready for COPY

        Raises:
            PayloadEncodingError: If any row cannot be encoded
        """
        if batch.is_empty:
            raise PayloadEncodingError(
                "Cannot encode an empty batch", partition=batch.partition
            )

        seq_range = batch.sequence_range
        seen: set[tuple] = set()
        lines: list[str] = []

        for row in sorted(rows, key=_sort_key):
            if row.partition != batch.partition:
                raise PayloadEncodingError(
                    f"Row for {row.partition} in batch of {batch.partition}",
                    partition=batch.partition,
                    sequence_range=seq_range,
                )
            if row.natural_key in seen:
                raise PayloadEncodingError(
                    f"Duplicate key {row.timestamp.isoformat()}/{row.side.value}",
                    partition=batch.partition,
                    sequence_range=seq_range,
                )
            seen.add(row.natural_key)

            try:
                lines.append(self.encode_row(row))
            except (ValueError, TypeError, InvalidOperation, AttributeError) as e:
                raise PayloadEncodingError(
                    f"Cannot encode row at {row.first_sequence}..{row.last_sequence}: {e}",
                    partition=batch.partition,
                    sequence_range=seq_range,
                ) from e

        data = "".join(f"{line}\n" for line in lines).encode("utf-8")
        return BulkPayload(
            partition=batch.partition,
            columns=TARGET_COLUMNS,
            data=data,
            row_count=len(lines),
            first_sequence=batch.first_sequence,
            last_sequence=batch.last_sequence,
            checksum=hashlib.sha256(data).hexdigest(),
        )


def decode_payload(data: bytes) -> list[AggregatedRow]:
    """Parse a COPY text payload produced by BulkEncoder back into rows."""
    rows: list[AggregatedRow] = []
    for line_no, line in enumerate(data.decode("utf-8").split("\n"), start=1):
        if not line:
            continue
        fields = line.split("\t")
        if len(fields) != len(TARGET_COLUMNS):
            raise ValueError(
                f"Line {line_no}: expected {len(TARGET_COLUMNS)} fields, got {len(fields)}"
            )
        if NULL in fields:
            raise ValueError(f"Line {line_no}: unexpected NULL")

        (exchange, instrument, traded_at, side, count, volume,
         p_open, p_high, p_low, p_close, p_avg, first_seq, last_seq) = fields

        rows.append(AggregatedRow(
            partition=PartitionKey(_unescape(exchange), _unescape(instrument)),
            timestamp=datetime.fromisoformat(traded_at),
            side=Side(side),
            trade_count=int(count),
            volume_sum=Decimal(volume),
            price_open=Decimal(p_open),
            price_high=Decimal(p_high),
            price_low=Decimal(p_low),
            price_close=Decimal(p_close),
            price_avg=Decimal(p_avg),
            first_sequence=int(first_seq),
            last_sequence=int(last_seq),
        ))
    return rows
