"""Tests for the aggregation engine."""

import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from compactor.core.aggregation import reduce_batch, trim_open_group, validate_batch
from compactor.core.errors import MalformedExecutionError
from compactor.models import PartitionKey, RawExecution, Side

PARTITION = PartitionKey("bitflyer", "FX_BTC_JPY")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_execution(
    sequence: int,
    ts: int,
    price: str | None = "100",
    volume: str | None = "1",
    side: Side | None = Side.BUY,
    partition: PartitionKey = PARTITION,
) -> RawExecution:
    """Helper to create an execution `ts` seconds after T0."""
    return RawExecution(
        partition=partition,
        sequence=sequence,
        timestamp=T0 + timedelta(seconds=ts),
        price=None if price is None else Decimal(price),
        volume=None if volume is None else Decimal(volume),
        side=side,
    )


class TestReduceBatch:
    """Tests for reduce_batch."""

    def test_worked_example(self):
        """Two buys at ts=100 merge; the sell at ts=105 stays alone."""
        rows = [
            make_execution(1, 100, price="10", volume="2", side=Side.BUY),
            make_execution(2, 100, price="12", volume="3", side=Side.BUY),
            make_execution(3, 105, price="9", volume="1", side=Side.SELL),
        ]

        result = reduce_batch(rows)

        assert len(result) == 2
        buy, sell = result
        assert buy.timestamp == T0 + timedelta(seconds=100)
        assert buy.side == Side.BUY
        assert buy.volume_sum == Decimal("5")
        assert buy.trade_count == 2
        assert buy.price_open == Decimal("10")
        assert buy.price_close == Decimal("12")
        assert buy.price_high == Decimal("12")
        assert buy.price_low == Decimal("10")
        assert buy.price_avg == Decimal("11")
        assert (buy.first_sequence, buy.last_sequence) == (1, 2)

        assert sell.side == Side.SELL
        assert sell.volume_sum == Decimal("1")
        assert sell.trade_count == 1
        assert sell.price_open == sell.price_close == Decimal("9")
        assert sell.price_high == sell.price_low == Decimal("9")

    def test_empty_batch(self):
        assert reduce_batch([]) == []

    def test_sides_are_separate_groups(self):
        rows = [
            make_execution(1, 0, side=Side.BUY),
            make_execution(2, 0, side=Side.SELL),
            make_execution(3, 0, side=Side.BUY),
        ]

        result = reduce_batch(rows)

        assert [(r.side, r.trade_count) for r in result] == [(Side.BUY, 2), (Side.SELL, 1)]

    def test_side_unaware_merges_all_sides(self):
        rows = [
            make_execution(1, 0, side=Side.BUY),
            make_execution(2, 0, side=Side.SELL),
            make_execution(3, 0, side=None),
        ]

        result = reduce_batch(rows, side_aware=False)

        assert len(result) == 1
        assert result[0].side == Side.NONE
        assert result[0].trade_count == 3

    def test_open_close_follow_sequence_order(self):
        """Smaller sequence is earlier when the timestamp ties."""
        rows = [
            make_execution(7, 0, price="50"),
            make_execution(8, 0, price="40"),
            make_execution(9, 0, price="45"),
        ]

        (row,) = reduce_batch(rows)

        assert row.price_open == Decimal("50")
        assert row.price_close == Decimal("45")
        assert row.price_high == Decimal("50")
        assert row.price_low == Decimal("40")

    def test_output_sorted_by_timestamp_then_side(self):
        rows = [
            make_execution(1, 0, side=Side.SELL),
            make_execution(2, 0, side=Side.BUY),
            make_execution(3, 1, side=Side.SELL),
        ]

        result = reduce_batch(rows)

        assert [(r.timestamp, r.side) for r in result] == [
            (T0, Side.BUY),
            (T0, Side.SELL),
            (T0 + timedelta(seconds=1), Side.SELL),
        ]

    def test_deterministic_across_runs(self):
        rng = random.Random(42)
        rows = []
        ts = 0
        for seq in range(1, 501):
            ts += rng.choice([0, 0, 1])
            rows.append(make_execution(
                seq, ts,
                price=str(rng.randint(9000, 11000)),
                volume=f"0.{rng.randint(1, 999):03d}",
                side=rng.choice([Side.BUY, Side.SELL]),
            ))

        first = reduce_batch(rows)
        second = reduce_batch(list(rows))

        assert first == second
        assert sum(r.trade_count for r in first) == 500
        assert sum(r.volume_sum for r in first) == sum(r.volume for r in rows)

    def test_average_keeps_precision(self):
        rows = [
            make_execution(1, 0, price="1"),
            make_execution(2, 0, price="2"),
            make_execution(3, 0, price="2"),
        ]

        (row,) = reduce_batch(rows)

        assert row.price_avg == Decimal("5") / Decimal("3")


class TestValidateBatch:
    """Malformed rows are rejected, never skipped."""

    def test_valid_batch_passes(self):
        validate_batch([make_execution(4, 0), make_execution(5, 1)], after_sequence=3)

    def test_sequence_at_or_below_watermark(self):
        with pytest.raises(MalformedExecutionError) as exc_info:
            validate_batch([make_execution(3, 0)], after_sequence=3)

        assert exc_info.value.sequence == 3
        assert exc_info.value.partition == PARTITION

    def test_sequence_not_increasing(self):
        rows = [make_execution(5, 0), make_execution(5, 0)]

        with pytest.raises(MalformedExecutionError, match="sequence not above 5"):
            validate_batch(rows, after_sequence=0)

    def test_timestamp_going_backwards(self):
        rows = [make_execution(1, 10), make_execution(2, 9)]

        with pytest.raises(MalformedExecutionError) as exc_info:
            validate_batch(rows, after_sequence=0)

        assert exc_info.value.sequence == 2
        assert exc_info.value.sequence_range == (1, 2)

    @pytest.mark.parametrize("field", ["price", "volume"])
    def test_missing_numeric(self, field):
        rows = [make_execution(1, 0, **{field: None})]

        with pytest.raises(MalformedExecutionError, match=field):
            validate_batch(rows, after_sequence=0)

    def test_non_finite_price(self):
        rows = [make_execution(1, 0, price="NaN")]

        with pytest.raises(MalformedExecutionError, match="price"):
            validate_batch(rows, after_sequence=0)

    def test_missing_side_when_side_aware(self):
        rows = [make_execution(1, 0, side=None)]

        with pytest.raises(MalformedExecutionError, match="side"):
            validate_batch(rows, after_sequence=0)

        validate_batch(rows, after_sequence=0, side_aware=False)

    def test_foreign_partition(self):
        rows = [
            make_execution(1, 0),
            make_execution(2, 0, partition=PartitionKey("liquid", "BTCJPY")),
        ]

        with pytest.raises(MalformedExecutionError, match="liquid/BTCJPY"):
            validate_batch(rows, after_sequence=0)

    def test_reduce_batch_validates(self):
        rows = [make_execution(1, 0, volume=None)]

        with pytest.raises(MalformedExecutionError):
            reduce_batch(rows)

    def test_error_message_names_range(self):
        rows = [make_execution(10, 0), make_execution(11, 0, price=None)]

        with pytest.raises(MalformedExecutionError) as exc_info:
            validate_batch(rows, after_sequence=9)

        text = str(exc_info.value)
        assert "bitflyer/FX_BTC_JPY" in text
        assert "sequences=10..11" in text


class TestTrimOpenGroup:
    """Tests for trim_open_group."""

    def test_drops_trailing_timestamp_group(self):
        rows = [make_execution(1, 0), make_execution(2, 1), make_execution(3, 1)]

        assert [r.sequence for r in trim_open_group(rows)] == [1]

    def test_single_group_becomes_empty(self):
        rows = [make_execution(1, 5), make_execution(2, 5)]

        assert trim_open_group(rows) == []

    def test_empty(self):
        assert trim_open_group([]) == []
