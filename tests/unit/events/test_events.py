"""Unit tests for ledger event models and their JSON Schema contracts."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from lotbook.events import (
    ControlEvent,
    LedgerReadyEvent,
    LedgerRejectionEvent,
    PositionUpdateEvent,
    PriceUpdateEvent,
    SnapshotCreatedEvent,
)
from lotbook.services.ledger.models import (
    AccountingMethod,
    LotConsumption,
    PortfolioSnapshot,
    Position,
    TransactionPnL,
    TransactionType,
)


@pytest.fixture
def record(base_time: datetime) -> TransactionPnL:
    return TransactionPnL(
        transaction_id="s1",
        wallet_id="w1",
        token_address="0xtoken",
        transaction_type=TransactionType.SELL,
        quantity=Decimal("120"),
        requested_quantity=Decimal("120"),
        price=Decimal("3"),
        fees=Decimal("0.5"),
        cost_basis=Decimal("141.00000000"),
        proceeds=Decimal("360.00000000"),
        realized_pnl=Decimal("218.50000000"),
        current_price=Decimal("3"),
        accounting_method=AccountingMethod.FIFO,
        is_realized=True,
        lot_consumptions=[
            LotConsumption(lot_id="b1", quantity=Decimal("100"), cost_basis=Decimal("101")),
            LotConsumption(lot_id="b2", quantity=Decimal("20"), cost_basis=Decimal("40")),
        ],
        occurred_at=base_time,
    )


@pytest.fixture
def position(base_time: datetime) -> Position:
    return Position(
        wallet_id="w1",
        token_address="0xtoken",
        current_balance=Decimal("30"),
        total_cost=Decimal("60.00000000"),
        unrealized_pnl=Decimal("-15.00000000"),
        current_price=Decimal("1.5"),
        current_value=Decimal("45.00000000"),
        price_as_of=base_time,
        transaction_count=3,
        first_purchase_at=base_time,
        last_transaction_at=base_time,
    )


class TestEnvelope:
    def test_defaults(self) -> None:
        event = LedgerReadyEvent(source_service="ledger_service")

        assert event.event_type == "ledger_ready"
        assert event.event_version == 1
        assert event.occurred_at.tzinfo is not None
        assert len(event.event_id) == 36

    def test_naive_timestamp_becomes_utc(self) -> None:
        event = ControlEvent(source_service="test", occurred_at=datetime(2024, 1, 15, 10, 30))

        assert event.occurred_at == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_iso_string_timestamp(self) -> None:
        event = ControlEvent(source_service="test", occurred_at="2024-01-15T10:30:00Z")

        assert event.occurred_at.tzinfo is not None
        assert event.model_dump()["occurred_at"] == "2024-01-15T10:30:00Z"

    def test_rejects_bad_envelope(self) -> None:
        with pytest.raises(ValidationError, match="envelope"):
            ControlEvent(source_service="")

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            ControlEvent(source_service="test", unexpected="x")

    def test_events_are_frozen(self) -> None:
        event = LedgerReadyEvent(source_service="test")

        with pytest.raises(ValidationError):
            event.rebuilt_keys = 3


class TestPositionUpdateEvent:
    def test_accepts_dumped_models(self, record: TransactionPnL, position: Position) -> None:
        event = PositionUpdateEvent(
            source_service="ledger_service",
            correlation_id="s1",
            position_key=str(position.key),
            transaction_pnl=record.model_dump(mode="json"),
            position=position.model_dump(mode="json"),
        )

        assert event.event_type == "position_update"
        assert event.position["current_balance"] == "30"
        assert event.transaction_pnl["lot_consumptions"][0]["lot_id"] == "b1"

    def test_numeric_decimal_rejected(self, record: TransactionPnL, position: Position) -> None:
        payload = position.model_dump(mode="json")
        payload["current_balance"] = 30.0

        with pytest.raises(ValidationError, match="position_update"):
            PositionUpdateEvent(
                source_service="ledger_service",
                position_key=str(position.key),
                transaction_pnl=record.model_dump(mode="json"),
                position=payload,
            )

    def test_missing_required_field(self, record: TransactionPnL, position: Position) -> None:
        payload = record.model_dump(mode="json")
        del payload["accounting_method"]

        with pytest.raises(ValidationError):
            PositionUpdateEvent(
                source_service="ledger_service",
                position_key=str(position.key),
                transaction_pnl=payload,
                position=position.model_dump(mode="json"),
            )


class TestOtherEvents:
    def test_price_update(self, position: Position) -> None:
        event = PriceUpdateEvent(
            source_service="ledger_service",
            position_key=str(position.key),
            position=position.model_dump(mode="json"),
        )

        assert event.position["price_stale"] is False

    def test_rejection_requires_reason(self) -> None:
        event = LedgerRejectionEvent(
            source_service="ledger_service", source_tx_id="s9", reason="not enough lots", error_type="InsufficientLots"
        )
        assert event.position_key is None

        with pytest.raises(ValidationError):
            LedgerRejectionEvent(source_service="ledger_service", reason="", error_type="InvalidEvent")

    def test_ready_event_lists_failed_keys(self) -> None:
        event = LedgerReadyEvent(source_service="ledger_service", rebuilt_keys=2, failed_keys=["w3:0xother"])

        assert event.failed_keys == ["w3:0xother"]


class TestSnapshotCreatedEvent:
    def test_accepts_dumped_snapshot(self, base_time: datetime) -> None:
        snapshot = PortfolioSnapshot(
            wallet_id="w1", taken_at=base_time, unrealized_pnl=Decimal("-15"), position_count=1
        )

        event = SnapshotCreatedEvent(source_service="ledger_service", snapshot=snapshot.model_dump(mode="json"))

        assert event.event_type == "snapshot_created"
        assert event.snapshot["unrealized_pnl"] == "-15"
        assert event.snapshot["snapshot_type"] == "on_demand"

    def test_portfolio_snapshot_has_null_wallet(self, base_time: datetime) -> None:
        payload = PortfolioSnapshot(taken_at=base_time).model_dump(mode="json")

        assert SnapshotCreatedEvent(source_service="ledger_service", snapshot=payload).snapshot["wallet_id"] is None

    def test_unknown_snapshot_type_rejected(self, base_time: datetime) -> None:
        payload = PortfolioSnapshot(taken_at=base_time).model_dump(mode="json")
        payload["snapshot_type"] = "hourly"

        with pytest.raises(ValidationError):
            SnapshotCreatedEvent(source_service="ledger_service", snapshot=payload)
