"""Ledger repositories: durable store for records, positions and lot state.

Records are append-only and keyed by transaction id; appending the same id
twice is a no-op, which makes retried writes safe. Positions and lot sets are
overwritten on every write for their key. A processed event is stored with
``write_mutation``, which commits record, lot set and position together and
stamps the lot set with the id of the last record it reflects.

Portfolio snapshots are a separate append-only history.
"""

import sqlite3
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from lotbook.services.ledger.models import Lot, PortfolioSnapshot, Position, PositionKey, TransactionPnL
from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()


@runtime_checkable
class ILedgerRepository(Protocol):
    """
    Persistence contract used by the ledger service and reconstructor.

    Implementations must preserve append order of transactions per key and
    treat a repeated transaction id as already stored.
    """

    def write_mutation(self, record: TransactionPnL, lots: list[Lot], position: Position) -> None:
        """
        Store one processed event atomically: record, open lots and position.

        Either all three are stored or none is. The lot set is stamped with
        ``record.transaction_id`` (see ``get_lot_watermark``).
        """
        ...

    def append_transaction(self, record: TransactionPnL) -> None:
        """Append a record; ignored if the transaction id is already stored."""
        ...

    def upsert_position(self, position: Position) -> None:
        """Insert or overwrite the position row for its key."""
        ...

    def replace_lots(self, key: PositionKey, lots: list[Lot]) -> None:
        """Overwrite the open-lot state for a key (empty list = no open lots); clears the watermark."""
        ...

    def get_position_keys(self) -> list[PositionKey]:
        """All keys with at least one stored record, in first-seen order."""
        ...

    def get_transactions(self, key: PositionKey) -> list[TransactionPnL]:
        """Records for a key in append order."""
        ...

    def get_position(self, key: PositionKey) -> Position | None:
        ...

    def get_lots(self, key: PositionKey) -> list[Lot] | None:
        """Stored open lots, or None if lot state was never written for the key."""
        ...

    def get_lot_watermark(self, key: PositionKey) -> str | None:
        """Transaction id the stored lot set reflects, or None if unknown."""
        ...

    def append_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        """Append a snapshot; ignored if the snapshot id is already stored."""
        ...

    def get_snapshots(self) -> list[PortfolioSnapshot]:
        """All snapshots in append order."""
        ...

    def close(self) -> None:
        ...


class InMemoryLedgerRepository:
    """
    In-memory repository for tests and ephemeral runs.

    Thread-safe; data is lost on process exit.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._transactions: dict[PositionKey, list[TransactionPnL]] = {}
        self._transaction_ids: set[str] = set()
        self._positions: dict[PositionKey, Position] = {}
        self._lots: dict[PositionKey, list[Lot]] = {}
        self._watermarks: dict[PositionKey, str | None] = {}
        self._snapshots: dict[str, PortfolioSnapshot] = {}

    def write_mutation(self, record: TransactionPnL, lots: list[Lot], position: Position) -> None:
        with self._lock:
            self._append(record)
            self._lots[record.key] = list(lots)
            self._watermarks[record.key] = record.transaction_id
            self._positions[position.key] = position.model_copy()

    def append_transaction(self, record: TransactionPnL) -> None:
        with self._lock:
            self._append(record)

    def _append(self, record: TransactionPnL) -> None:
        if record.transaction_id in self._transaction_ids:
            return
        self._transaction_ids.add(record.transaction_id)
        self._transactions.setdefault(record.key, []).append(record)

    def upsert_position(self, position: Position) -> None:
        with self._lock:
            self._positions[position.key] = position.model_copy()

    def replace_lots(self, key: PositionKey, lots: list[Lot]) -> None:
        with self._lock:
            self._lots[key] = list(lots)
            self._watermarks[key] = None

    def get_position_keys(self) -> list[PositionKey]:
        with self._lock:
            return list(self._transactions)

    def get_transactions(self, key: PositionKey) -> list[TransactionPnL]:
        with self._lock:
            return list(self._transactions.get(key, []))

    def get_position(self, key: PositionKey) -> Position | None:
        with self._lock:
            position = self._positions.get(key)
            return position.model_copy() if position is not None else None

    def get_lots(self, key: PositionKey) -> list[Lot] | None:
        with self._lock:
            lots = self._lots.get(key)
            return list(lots) if lots is not None else None

    def get_lot_watermark(self, key: PositionKey) -> str | None:
        with self._lock:
            return self._watermarks.get(key)

    def append_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        with self._lock:
            self._snapshots.setdefault(snapshot.snapshot_id, snapshot)

    def get_snapshots(self) -> list[PortfolioSnapshot]:
        with self._lock:
            return list(self._snapshots.values())

    def close(self) -> None:
        pass


class SQLiteLedgerRepository:
    """
    SQLite-backed repository.

    Models are stored as JSON text (Decimal values serialize as strings, so
    no precision is lost). Safe for use from multiple threads; all access goes
    through one connection guarded by a lock.

    Args:
        path: Database file path, or ":memory:"

    Example:
        >>> repo = SQLiteLedgerRepository("data/ledger.db")
        >>> repo.write_mutation(record, lots, position)
        >>> repo.close()
    """

    def __init__(self, path: str | Path = "ledger.db") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._init_db()
        logger.debug("sqlite_repository.opened", path=self.path)

    def _init_db(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL UNIQUE,
                    wallet_id TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    payload TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_transactions_key
                    ON transactions (wallet_id, token_address, seq);
                CREATE TABLE IF NOT EXISTS positions (
                    wallet_id TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (wallet_id, token_address)
                );
                CREATE TABLE IF NOT EXISTS lot_sets (
                    wallet_id TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    through_tx_id TEXT,
                    PRIMARY KEY (wallet_id, token_address)
                );
                CREATE TABLE IF NOT EXISTS lots (
                    wallet_id TEXT NOT NULL,
                    token_address TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    lot_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (wallet_id, token_address, lot_id)
                );
                CREATE TABLE IF NOT EXISTS snapshots (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    snapshot_id TEXT NOT NULL UNIQUE,
                    wallet_id TEXT,
                    taken_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                );
                """
            )
            columns = {row[1] for row in self._conn.execute("PRAGMA table_info(lot_sets)")}
            if "through_tx_id" not in columns:
                # Databases created before lot sets carried a watermark
                self._conn.execute("ALTER TABLE lot_sets ADD COLUMN through_tx_id TEXT")

    def write_mutation(self, record: TransactionPnL, lots: list[Lot], position: Position) -> None:
        with self._lock, self._conn:
            self._insert_transaction(record)
            self._store_lots(record.key, lots, through_tx_id=record.transaction_id)
            self._store_position(position)

    def append_transaction(self, record: TransactionPnL) -> None:
        with self._lock, self._conn:
            self._insert_transaction(record)

    def upsert_position(self, position: Position) -> None:
        with self._lock, self._conn:
            self._store_position(position)

    def replace_lots(self, key: PositionKey, lots: list[Lot]) -> None:
        with self._lock, self._conn:
            self._store_lots(key, lots, through_tx_id=None)

    def _insert_transaction(self, record: TransactionPnL) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO transactions (transaction_id, wallet_id, token_address, payload) "
            "VALUES (?, ?, ?, ?)",
            (record.transaction_id, record.wallet_id, record.token_address, record.model_dump_json()),
        )

    def _store_position(self, position: Position) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO positions (wallet_id, token_address, payload) VALUES (?, ?, ?)",
            (position.wallet_id, position.token_address, position.model_dump_json()),
        )

    def _store_lots(self, key: PositionKey, lots: list[Lot], through_tx_id: str | None) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO lot_sets (wallet_id, token_address, through_tx_id) VALUES (?, ?, ?)",
            (key.wallet_id, key.token_address, through_tx_id),
        )
        self._conn.execute(
            "DELETE FROM lots WHERE wallet_id = ? AND token_address = ?",
            (key.wallet_id, key.token_address),
        )
        self._conn.executemany(
            "INSERT INTO lots (wallet_id, token_address, position, lot_id, payload) VALUES (?, ?, ?, ?, ?)",
            [(key.wallet_id, key.token_address, i, lot.lot_id, lot.model_dump_json()) for i, lot in enumerate(lots)],
        )

    def get_position_keys(self) -> list[PositionKey]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT wallet_id, token_address FROM transactions "
                "GROUP BY wallet_id, token_address ORDER BY MIN(seq)"
            ).fetchall()
        return [PositionKey(wallet_id=w, token_address=t) for w, t in rows]

    def get_transactions(self, key: PositionKey) -> list[TransactionPnL]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM transactions WHERE wallet_id = ? AND token_address = ? ORDER BY seq",
                (key.wallet_id, key.token_address),
            ).fetchall()
        return [TransactionPnL.model_validate_json(payload) for (payload,) in rows]

    def get_position(self, key: PositionKey) -> Position | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM positions WHERE wallet_id = ? AND token_address = ?",
                (key.wallet_id, key.token_address),
            ).fetchone()
        return Position.model_validate_json(row[0]) if row else None

    def get_lots(self, key: PositionKey) -> list[Lot] | None:
        with self._lock:
            known = self._conn.execute(
                "SELECT 1 FROM lot_sets WHERE wallet_id = ? AND token_address = ?",
                (key.wallet_id, key.token_address),
            ).fetchone()
            if known is None:
                return None
            rows = self._conn.execute(
                "SELECT payload FROM lots WHERE wallet_id = ? AND token_address = ? ORDER BY position",
                (key.wallet_id, key.token_address),
            ).fetchall()
        return [Lot.model_validate_json(payload) for (payload,) in rows]

    def get_lot_watermark(self, key: PositionKey) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT through_tx_id FROM lot_sets WHERE wallet_id = ? AND token_address = ?",
                (key.wallet_id, key.token_address),
            ).fetchone()
        return row[0] if row else None

    def append_snapshot(self, snapshot: PortfolioSnapshot) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT OR IGNORE INTO snapshots (snapshot_id, wallet_id, taken_at, payload) VALUES (?, ?, ?, ?)",
                (snapshot.snapshot_id, snapshot.wallet_id, snapshot.taken_at.isoformat(), snapshot.model_dump_json()),
            )

    def get_snapshots(self) -> list[PortfolioSnapshot]:
        with self._lock:
            rows = self._conn.execute("SELECT payload FROM snapshots ORDER BY seq").fetchall()
        return [PortfolioSnapshot.model_validate_json(payload) for (payload,) in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug("sqlite_repository.closed", path=self.path)
