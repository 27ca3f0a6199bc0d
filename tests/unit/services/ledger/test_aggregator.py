"""Unit tests for PositionAggregator."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lotbook.services.ledger.aggregator import PositionAggregator
from lotbook.services.ledger.engine import AccountingEngine
from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import AccountingConfig, Position, PriceObservation, parse_transaction_event


@pytest.fixture
def aggregator() -> PositionAggregator:
    return PositionAggregator()


def run(payloads: list[dict], price: str, aggregator: PositionAggregator) -> tuple[Position, LotStore]:
    engine = AccountingEngine()
    store = LotStore()
    position = None
    for payload in payloads:
        result = engine.apply(parse_transaction_event(payload), AccountingConfig(), store)
        store = result.lot_store
        position = aggregator.fold(position, result.record)
    assert position is not None
    observation = PriceObservation(price=Decimal(price))
    return aggregator.recompute(position, store, observation), store


class TestRecompute:
    def test_open_position_valuation(self, aggregator: PositionAggregator, make_event) -> None:
        position, store = run(
            [make_event("b1", "buy", "100", "1"), make_event("b2", "buy", "50", "2", minutes=1)],
            "3",
            aggregator,
        )

        assert position.current_balance == Decimal("150")
        assert position.total_cost == Decimal("200")
        assert position.average_cost_basis == Decimal("1.33333333")
        assert position.current_value == Decimal("450")
        assert position.unrealized_pnl == Decimal("250")
        assert position.total_pnl == Decimal("250")
        assert position.roi == Decimal("125")
        assert position.open_lot_count == 2
        assert position.current_balance == store.total_quantity()

    def test_flat_position_has_zero_average_and_roi(self, aggregator: PositionAggregator, make_event) -> None:
        position, _ = run(
            [make_event("b1", "buy", "10", "1"), make_event("s1", "sell", "10", "2", minutes=1)],
            "5",
            aggregator,
        )

        assert position.is_flat
        assert position.average_cost_basis == Decimal("0")
        assert position.unrealized_pnl == Decimal("0")
        assert position.realized_pnl == Decimal("10")
        assert position.total_pnl == Decimal("10")
        assert position.roi == Decimal("0")

    def test_price_change_only_touches_price_fields(self, aggregator: PositionAggregator, make_event) -> None:
        position, store = run(
            [make_event("b1", "buy", "100", "1"), make_event("s1", "sell", "40", "2", minutes=1)],
            "2",
            aggregator,
        )

        repriced = aggregator.recompute(position, store, PriceObservation(price=Decimal("0.5"), stale=True))

        assert repriced.realized_pnl == position.realized_pnl
        assert repriced.transaction_count == position.transaction_count
        assert repriced.current_balance == position.current_balance
        assert repriced.total_cost == position.total_cost
        assert repriced.unrealized_pnl == Decimal("-30")
        assert repriced.total_pnl == Decimal("10")
        assert repriced.price_stale is True

    def test_does_not_mutate_input(self, aggregator: PositionAggregator, make_event) -> None:
        position, store = run([make_event("b1", "buy", "1", "1")], "1", aggregator)

        aggregator.recompute(position, store, PriceObservation(price=Decimal("9")))

        assert position.current_price == Decimal("1")


class TestFold:
    def test_activity_fields(self, aggregator: PositionAggregator, make_event, base_time: datetime) -> None:
        position, _ = run(
            [
                make_event("b1", "buy", "10", "1", fees="0.1", gas_used=21000),
                make_event("f1", "fee_payment", "1", "1", fees="0.05", minutes=5),
                make_event("s1", "sell", "4", "3", fees="0.2", minutes=10),
            ],
            "3",
            aggregator,
        )

        assert position.transaction_count == 3
        assert position.first_purchase_at == base_time
        assert position.last_transaction_at == base_time + timedelta(minutes=10)
        assert position.total_fees == Decimal("0.35")
        assert position.unattributed_fees == Decimal("0.05")
        assert position.gas_fees == Decimal("0.000105")

    def test_first_purchase_ignores_non_opening_events(
        self, aggregator: PositionAggregator, make_event, base_time: datetime
    ) -> None:
        position, _ = run(
            [make_event("f1", "funding", "1", "1"), make_event("b1", "buy", "1", "1", minutes=3)],
            "1",
            aggregator,
        )

        assert position.first_purchase_at == base_time + timedelta(minutes=3)

    def test_realized_accumulates(self, aggregator: PositionAggregator, make_event) -> None:
        position, _ = run(
            [
                make_event("b1", "buy", "10", "1"),
                make_event("s1", "sell", "5", "2", minutes=1),
                make_event("s2", "sell", "5", "0.5", minutes=2),
            ],
            "1",
            aggregator,
        )

        assert position.realized_pnl == Decimal("2.5")
