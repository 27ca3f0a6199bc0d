"""Ledger reconstructor: rebuilds lot stores and positions from history.

Runs once at startup, before live events are accepted. Reads only; never
publishes events and never writes to the repository.
"""

from dataclasses import dataclass, field

from lotbook.services.ledger.aggregator import PositionAggregator
from lotbook.services.ledger.errors import ReconstructionFailure
from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import Lot, Position, PositionKey, PriceObservation, TransactionPnL
from lotbook.services.persistence.repository import ILedgerRepository
from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()


@dataclass
class ReconstructedLedger:
    """Rebuilt state for one position key."""

    key: PositionKey
    lot_store: LotStore
    position: Position
    records: list[TransactionPnL]


@dataclass
class ReconstructionReport:
    """
    Outcome of a startup reconstruction.

    ``orphaned_records`` holds the readable records of keys that failed to
    rebuild, so their transaction ids still count as already applied.
    """

    ledgers: dict[PositionKey, ReconstructedLedger] = field(default_factory=dict)
    failures: dict[PositionKey, str] = field(default_factory=dict)
    orphaned_records: dict[PositionKey, list[TransactionPnL]] = field(default_factory=dict)
    lot_mismatches: list[PositionKey] = field(default_factory=list)

    @property
    def rebuilt_count(self) -> int:
        return len(self.ledgers)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _StoredKey:
    records: list[TransactionPnL]
    lots: list[Lot] | None
    lot_watermark: str | None
    position: Position | None


def lot_from_record(record: TransactionPnL) -> Lot:
    """Re-create the lot opened by a buy/launch record."""
    return Lot(
        lot_id=record.transaction_id,
        wallet_id=record.wallet_id,
        token_address=record.token_address,
        quantity=record.quantity,
        remaining_quantity=record.quantity,
        unit_cost=record.price,
        fees_attributed=record.fees_attributed,
        opened_at=record.occurred_at,
        source_tx_id=record.transaction_id,
    )


class LedgerReconstructor:
    """
    Replays persisted records into lot stores and positions.

    For each key:
    - Lots are re-created from buy/launch records
    - Sells are folded by their recorded lot consumptions; the matching
      algorithm is never re-run, so a later change of accounting method
      cannot alter history
    - Persisted lot state is authoritative for remaining quantities when it
      was written with the key's last record; a lot set stamped with an
      older record (or disagreeing with the replay) is logged as a
      mismatch, and a stale one is replaced by the replayed lots
    - Realized P&L and counters are folded through the same aggregator
      the live path uses

    A key that cannot be rebuilt is reported and skipped; the others
    continue.

    Example:
        >>> reconstructor = LedgerReconstructor(repository)
        >>> report = reconstructor.reconstruct()
        >>> report.rebuilt_count
        3
    """

    def __init__(self, repository: ILedgerRepository, aggregator: PositionAggregator | None = None) -> None:
        self.repository = repository
        self.aggregator = aggregator or PositionAggregator()

    def reconstruct(self) -> ReconstructionReport:
        """Rebuild every key known to the repository."""
        report = ReconstructionReport()
        keys = self.repository.get_position_keys()
        logger.info("reconstructor.started", keys=len(keys))

        for key in keys:
            stored: _StoredKey | None = None
            try:
                stored = self._load(key)
                ledger, mismatch = self._rebuild(key, stored)
            except ReconstructionFailure as e:
                report.failures[key] = e.reason
                if stored is not None:
                    report.orphaned_records[key] = stored.records
                logger.error("reconstructor.key_failed", position_key=str(key), reason=e.reason)
                continue
            report.ledgers[key] = ledger
            if mismatch:
                report.lot_mismatches.append(key)

        logger.info(
            "reconstructor.completed",
            rebuilt=report.rebuilt_count,
            failed=report.failed_count,
            lot_mismatches=len(report.lot_mismatches),
        )
        return report

    def reconstruct_key(self, key: PositionKey) -> ReconstructedLedger:
        """
        Rebuild one key.

        Raises:
            ReconstructionFailure: History for the key is inconsistent
        """
        ledger, _ = self._rebuild(key, self._load(key))
        return ledger

    def _load(self, key: PositionKey) -> _StoredKey:
        try:
            return _StoredKey(
                records=self.repository.get_transactions(key),
                lots=self.repository.get_lots(key),
                lot_watermark=self.repository.get_lot_watermark(key),
                position=self.repository.get_position(key),
            )
        except Exception as e:
            raise ReconstructionFailure(str(key), f"repository read failed: {e}") from e

    def _rebuild(self, key: PositionKey, stored: _StoredKey) -> tuple[ReconstructedLedger, bool]:
        records = stored.records
        if not records:
            raise ReconstructionFailure(str(key), "no transaction records")

        position: Position | None = None
        for record in records:
            if record.key != key:
                raise ReconstructionFailure(str(key), f"record {record.transaction_id} belongs to {record.key}")
            position = self.aggregator.fold(position, record)
        assert position is not None

        try:
            replayed = self._replay_lots(records)
            replay_error = None
        except (KeyError, ValueError) as e:
            replayed = None
            replay_error = str(e)

        last_tx_id = records[-1].transaction_id
        mismatch = False
        if stored.lots is not None and stored.lot_watermark not in (None, last_tx_id):
            # Lot set predates the last record: the records win
            mismatch = True
            logger.warning(
                "reconstructor.lot_state_behind",
                position_key=str(key),
                lot_state_through=stored.lot_watermark,
                last_record=last_tx_id,
                replay_error=replay_error,
            )
            if replayed is None:
                raise ReconstructionFailure(
                    str(key),
                    f"lot state predates {last_tx_id} and consumptions cannot be replayed: {replay_error}",
                )
            store = replayed
        elif stored.lots is not None:
            store = LotStore(stored.lots)
            if replayed is None or self._remaining_by_lot(replayed) != self._remaining_by_lot(store):
                mismatch = True
                logger.warning(
                    "reconstructor.lot_state_mismatch",
                    position_key=str(key),
                    persisted_lots=len(store),
                    replayed_lots=len(replayed) if replayed is not None else None,
                    replay_error=replay_error,
                )
        elif replayed is not None:
            store = replayed
        else:
            raise ReconstructionFailure(str(key), f"cannot replay lot consumptions: {replay_error}")

        price = self._price_for(records, stored.position)
        position = self.aggregator.recompute(position, store, price)

        logger.debug(
            "reconstructor.key_rebuilt",
            position_key=str(key),
            records=len(records),
            open_lots=len(store),
            balance=str(position.current_balance),
            realized_pnl=str(position.realized_pnl),
        )
        return ReconstructedLedger(key=key, lot_store=store, position=position, records=records), mismatch

    @staticmethod
    def _replay_lots(records: list[TransactionPnL]) -> LotStore:
        store = LotStore()
        for record in records:
            if record.transaction_type.opens_lot:
                store.append_lot(lot_from_record(record))
            elif record.transaction_type.closes_lot:
                for consumption in record.lot_consumptions:
                    store.apply_consumption(consumption.lot_id, consumption.quantity)
                store.prune_empty()
        return store

    @staticmethod
    def _remaining_by_lot(store: LotStore) -> dict[str, object]:
        return {lot.lot_id: lot.remaining_quantity for lot in store.lots()}

    @staticmethod
    def _price_for(records: list[TransactionPnL], persisted: Position | None) -> PriceObservation:
        if persisted is not None and persisted.current_price > 0:
            return PriceObservation(
                price=persisted.current_price,
                as_of=persisted.price_as_of,
                stale=persisted.price_stale,
                source="position",
            )
        last = records[-1]
        return PriceObservation(price=last.current_price, as_of=last.occurred_at, stale=True, source="transaction")
