"""Unit tests for LotStore - FIFO/LIFO matching logic."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lotbook.services.ledger.errors import InsufficientLots
from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import AccountingMethod, Lot


def make_lot(lot_id: str, quantity: str, unit_cost: str, opened_at: datetime, fees: str = "0") -> Lot:
    return Lot(
        lot_id=lot_id,
        wallet_id="w1",
        token_address="0xtoken",
        quantity=Decimal(quantity),
        remaining_quantity=Decimal(quantity),
        unit_cost=Decimal(unit_cost),
        fees_attributed=Decimal(fees),
        opened_at=opened_at,
        source_tx_id=lot_id,
    )


@pytest.fixture
def store(base_time: datetime) -> LotStore:
    """Two lots: 100 @ $1 then 50 @ $2."""
    return LotStore(
        [
            make_lot("lot_a", "100", "1", base_time),
            make_lot("lot_b", "50", "2", base_time + timedelta(minutes=1)),
        ]
    )


class TestAppend:
    def test_totals(self, store: LotStore) -> None:
        assert len(store) == 2
        assert store.total_quantity() == Decimal("150")
        assert store.total_cost() == Decimal("200")

    def test_duplicate_lot_id_rejected(self, store: LotStore, base_time: datetime) -> None:
        with pytest.raises(ValueError, match="Duplicate lot id"):
            store.append_lot(make_lot("lot_a", "1", "1", base_time))

    def test_closed_lot_id_cannot_reopen(self, store: LotStore, base_time: datetime) -> None:
        store.consume(Decimal("100"), AccountingMethod.FIFO)
        assert store.prune_empty() == ["lot_a"]

        with pytest.raises(ValueError):
            store.append_lot(make_lot("lot_a", "1", "1", base_time))

    def test_contains(self, store: LotStore) -> None:
        assert "lot_a" in store
        assert "missing" not in store


class TestFIFOMatching:
    """FIFO consumes the oldest lots first."""

    def test_partial_close_single_lot(self, store: LotStore) -> None:
        matches = store.consume(Decimal("60"), AccountingMethod.FIFO)

        assert [(lot.lot_id, qty) for lot, qty in matches] == [("lot_a", Decimal("60"))]
        assert store.get("lot_a").remaining_quantity == Decimal("40")
        assert store.get("lot_b").remaining_quantity == Decimal("50")

    def test_close_spans_lots(self, store: LotStore) -> None:
        matches = store.consume(Decimal("120"), AccountingMethod.FIFO)

        assert [(lot.lot_id, qty) for lot, qty in matches] == [
            ("lot_a", Decimal("100")),
            ("lot_b", Decimal("20")),
        ]
        # Matched lots are reported as they were before consumption
        assert matches[0][0].remaining_quantity == Decimal("100")

    def test_orders_by_opened_at_not_insertion(self, base_time: datetime) -> None:
        store = LotStore()
        store.append_lot(make_lot("late", "10", "2", base_time + timedelta(hours=1)))
        store.append_lot(make_lot("early", "10", "1", base_time))

        matches = store.consume(Decimal("5"), AccountingMethod.FIFO)

        assert matches[0][0].lot_id == "early"

    def test_ties_match_in_insertion_order(self, base_time: datetime) -> None:
        store = LotStore([make_lot("first", "10", "1", base_time), make_lot("second", "10", "2", base_time)])

        assert [lot.lot_id for lot in store.ordered(AccountingMethod.FIFO)] == ["first", "second"]


class TestLIFOMatching:
    """LIFO consumes the newest lots first."""

    def test_close_spans_lots(self, store: LotStore) -> None:
        matches = store.consume(Decimal("120"), AccountingMethod.LIFO)

        assert [(lot.lot_id, qty) for lot, qty in matches] == [
            ("lot_b", Decimal("50")),
            ("lot_a", Decimal("70")),
        ]
        assert store.get("lot_b").is_empty
        assert store.get("lot_a").remaining_quantity == Decimal("30")

    def test_ties_match_in_reverse_insertion_order(self, base_time: datetime) -> None:
        store = LotStore([make_lot("first", "10", "1", base_time), make_lot("second", "10", "2", base_time)])

        assert [lot.lot_id for lot in store.ordered(AccountingMethod.LIFO)] == ["second", "first"]


class TestConsumeErrors:
    def test_insufficient_leaves_store_unchanged(self, store: LotStore) -> None:
        with pytest.raises(InsufficientLots) as exc_info:
            store.consume(Decimal("151"), AccountingMethod.FIFO)

        assert exc_info.value.requested == Decimal("151")
        assert exc_info.value.available == Decimal("150")
        assert store.total_quantity() == Decimal("150")

    def test_non_positive_quantity(self, store: LotStore) -> None:
        with pytest.raises(ValueError):
            store.consume(Decimal("0"), AccountingMethod.FIFO)


class TestRecordedConsumption:
    def test_apply_consumption(self, store: LotStore) -> None:
        updated = store.apply_consumption("lot_b", Decimal("20"))

        assert updated.remaining_quantity == Decimal("30")

    def test_apply_consumption_unknown_lot(self, store: LotStore) -> None:
        with pytest.raises(KeyError):
            store.apply_consumption("ghost", Decimal("1"))

    def test_apply_consumption_over_remaining(self, store: LotStore) -> None:
        with pytest.raises(ValueError):
            store.apply_consumption("lot_b", Decimal("51"))

    def test_set_remaining(self, store: LotStore) -> None:
        store.set_remaining("lot_a", Decimal("7"))

        assert store.total_quantity() == Decimal("57")


class TestCopy:
    def test_copy_is_independent(self, store: LotStore) -> None:
        clone = store.copy()
        clone.consume(Decimal("150"), AccountingMethod.FIFO)
        clone.prune_empty()

        assert len(clone) == 0
        assert store.total_quantity() == Decimal("150")
