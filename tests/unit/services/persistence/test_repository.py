"""Unit tests for ledger repositories (in-memory and SQLite share one contract)."""

import sqlite3
from datetime import datetime
from decimal import Decimal

import pytest

from lotbook.services.ledger.models import (
    AccountingMethod,
    Lot,
    PortfolioSnapshot,
    Position,
    PositionKey,
    SnapshotType,
    TransactionPnL,
    TransactionType,
)
from lotbook.services.persistence import ILedgerRepository, InMemoryLedgerRepository, SQLiteLedgerRepository

KEY = PositionKey(wallet_id="w1", token_address="0xtoken")
OTHER = PositionKey(wallet_id="w2", token_address="0xtoken")


def make_record(tx_id: str, key: PositionKey, when: datetime, price: str = "1.23456789") -> TransactionPnL:
    return TransactionPnL(
        transaction_id=tx_id,
        wallet_id=key.wallet_id,
        token_address=key.token_address,
        transaction_type=TransactionType.BUY,
        quantity=Decimal("0.000000000123"),
        requested_quantity=Decimal("0.000000000123"),
        price=Decimal(price),
        cost_basis=Decimal("0.00000000"),
        current_price=Decimal(price),
        accounting_method=AccountingMethod.FIFO,
        occurred_at=when,
    )


def make_lot(lot_id: str, when: datetime, remaining: str = "10") -> Lot:
    return Lot(
        lot_id=lot_id,
        wallet_id=KEY.wallet_id,
        token_address=KEY.token_address,
        quantity=Decimal("10"),
        remaining_quantity=Decimal(remaining),
        unit_cost=Decimal("1.5"),
        opened_at=when,
        source_tx_id=lot_id,
    )


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        repo = InMemoryLedgerRepository()
    else:
        repo = SQLiteLedgerRepository(tmp_path / "ledger.db")
    yield repo
    repo.close()


class TestContract:
    def test_implements_protocol(self, repository) -> None:
        assert isinstance(repository, ILedgerRepository)

    def test_append_preserves_order_per_key(self, repository, base_time: datetime) -> None:
        repository.append_transaction(make_record("t1", KEY, base_time))
        repository.append_transaction(make_record("t2", OTHER, base_time))
        repository.append_transaction(make_record("t3", KEY, base_time))

        assert [r.transaction_id for r in repository.get_transactions(KEY)] == ["t1", "t3"]
        assert repository.get_position_keys() == [KEY, OTHER]

    def test_append_is_idempotent(self, repository, base_time: datetime) -> None:
        record = make_record("t1", KEY, base_time)
        repository.append_transaction(record)
        repository.append_transaction(record)

        assert len(repository.get_transactions(KEY)) == 1

    def test_decimal_precision_preserved(self, repository, base_time: datetime) -> None:
        record = make_record("t1", KEY, base_time, price="0.00000001")
        repository.append_transaction(record)

        (stored,) = repository.get_transactions(KEY)
        assert stored == record
        assert stored.quantity == Decimal("0.000000000123")

    def test_lots_unknown_until_written(self, repository, base_time: datetime) -> None:
        assert repository.get_lots(KEY) is None

        repository.replace_lots(KEY, [])
        assert repository.get_lots(KEY) == []

    def test_replace_lots_overwrites(self, repository, base_time: datetime) -> None:
        repository.replace_lots(KEY, [make_lot("a", base_time), make_lot("b", base_time)])
        repository.replace_lots(KEY, [make_lot("b", base_time, remaining="4")])

        (lot,) = repository.get_lots(KEY)
        assert lot.lot_id == "b"
        assert lot.remaining_quantity == Decimal("4")

    def test_position_upsert(self, repository, base_time: datetime) -> None:
        assert repository.get_position(KEY) is None

        repository.upsert_position(Position(wallet_id="w1", token_address="0xtoken", current_balance=Decimal("5")))
        repository.upsert_position(
            Position(wallet_id="w1", token_address="0xtoken", current_balance=Decimal("7"), price_as_of=base_time)
        )

        stored = repository.get_position(KEY)
        assert stored.current_balance == Decimal("7")
        assert stored.price_as_of == base_time

    def test_write_mutation_stores_everything(self, repository, base_time: datetime) -> None:
        record = make_record("t1", KEY, base_time)
        position = Position(wallet_id="w1", token_address="0xtoken", current_balance=Decimal("10"))

        repository.write_mutation(record, [make_lot("t1", base_time)], position)

        assert repository.get_transactions(KEY) == [record]
        assert [lot.lot_id for lot in repository.get_lots(KEY)] == ["t1"]
        assert repository.get_position(KEY) == position
        assert repository.get_lot_watermark(KEY) == "t1"

    def test_watermark_follows_last_mutation(self, repository, base_time: datetime) -> None:
        position = Position(wallet_id="w1", token_address="0xtoken")
        assert repository.get_lot_watermark(KEY) is None

        repository.write_mutation(make_record("t1", KEY, base_time), [], position)
        repository.write_mutation(make_record("t2", KEY, base_time), [], position)
        assert repository.get_lot_watermark(KEY) == "t2"

        # Lot sets written on their own carry no watermark
        repository.replace_lots(KEY, [])
        assert repository.get_lot_watermark(KEY) is None

    def test_snapshots_append_in_order(self, repository, base_time: datetime) -> None:
        first = PortfolioSnapshot(taken_at=base_time, realized_pnl=Decimal("12.5"), position_count=2)
        second = PortfolioSnapshot(wallet_id="w1", taken_at=base_time, snapshot_type=SnapshotType.PERIODIC)

        assert repository.get_snapshots() == []
        repository.append_snapshot(first)
        repository.append_snapshot(second)
        repository.append_snapshot(first)

        assert repository.get_snapshots() == [first, second]


class TestSQLiteDurability:
    def test_survives_reopen(self, tmp_path, base_time: datetime) -> None:
        path = tmp_path / "data" / "ledger.db"
        repo = SQLiteLedgerRepository(path)
        repo.append_transaction(make_record("t1", KEY, base_time))
        repo.replace_lots(KEY, [make_lot("t1", base_time)])
        repo.close()

        reopened = SQLiteLedgerRepository(path)
        try:
            assert [r.transaction_id for r in reopened.get_transactions(KEY)] == ["t1"]
            assert [lot.lot_id for lot in reopened.get_lots(KEY)] == ["t1"]
        finally:
            reopened.close()

    def test_in_memory_database(self, base_time: datetime) -> None:
        repo = SQLiteLedgerRepository(":memory:")
        repo.append_transaction(make_record("t1", KEY, base_time))

        assert repo.get_position_keys() == [KEY]
        repo.close()

    def test_failed_mutation_leaves_nothing_behind(self, tmp_path, base_time: datetime) -> None:
        class BrokenPositions(SQLiteLedgerRepository):
            def _store_position(self, position: Position) -> None:
                raise sqlite3.OperationalError("disk I/O error")

        repo = BrokenPositions(tmp_path / "ledger.db")
        try:
            with pytest.raises(sqlite3.OperationalError):
                repo.write_mutation(
                    make_record("t1", KEY, base_time),
                    [make_lot("t1", base_time)],
                    Position(wallet_id="w1", token_address="0xtoken"),
                )

            assert repo.get_transactions(KEY) == []
            assert repo.get_lots(KEY) is None
            assert repo.get_position_keys() == []
        finally:
            repo.close()

    def test_snapshots_survive_reopen(self, tmp_path, base_time: datetime) -> None:
        path = tmp_path / "ledger.db"
        snapshot = PortfolioSnapshot(taken_at=base_time, total_pnl=Decimal("-3.25"), roi=Decimal("-1.0833"))
        repo = SQLiteLedgerRepository(path)
        repo.append_snapshot(snapshot)
        repo.close()

        reopened = SQLiteLedgerRepository(path)
        try:
            assert reopened.get_snapshots() == [snapshot]
        finally:
            reopened.close()

    def test_upgrades_lot_sets_without_watermark(self, tmp_path, base_time: datetime) -> None:
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE lot_sets (wallet_id TEXT NOT NULL, token_address TEXT NOT NULL, "
            "PRIMARY KEY (wallet_id, token_address))"
        )
        conn.execute("INSERT INTO lot_sets VALUES (?, ?)", (KEY.wallet_id, KEY.token_address))
        conn.commit()
        conn.close()

        repo = SQLiteLedgerRepository(path)
        try:
            assert repo.get_lots(KEY) == []
            assert repo.get_lot_watermark(KEY) is None

            position = Position(wallet_id="w1", token_address="0xtoken")
            repo.write_mutation(make_record("t1", KEY, base_time), [], position)
            assert repo.get_lot_watermark(KEY) == "t1"
        finally:
            repo.close()
