"""
Ledger service: orchestrates accounting for every (wallet, token) key.

Each key owns a PositionLedger (lot store, position, records) held in an
arena guarded by a lock. All mutation of a PositionLedger happens inside the
MutationSerializer's section for its key:

    inbound event -> parse -> serializer[key] -> engine -> aggregator
                  -> in-memory commit -> writer (retry / replay queue) -> publish

Price ticks update the shared PriceBook without locking, then recompute the
affected keys inside their serialized sections.
"""

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from lotbook.events import (
    EventBus,
    IEventBus,
    LedgerReadyEvent,
    LedgerRejectionEvent,
    PositionUpdateEvent,
    PriceUpdateEvent,
    SnapshotCreatedEvent,
)
from lotbook.services.ledger.aggregator import PositionAggregator
from lotbook.services.ledger.engine import AccountingEngine
from lotbook.services.ledger.errors import InvalidEvent, LedgerError
from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import (
    ZERO,
    AccountingConfig,
    Lot,
    PortfolioSnapshot,
    Position,
    PositionKey,
    PriceObservation,
    SnapshotType,
    TransactionEvent,
    TransactionPnL,
    parse_transaction_event,
)
from lotbook.services.ledger.reconstructor import LedgerReconstructor, ReconstructionReport
from lotbook.services.ledger.serializer import MutationSerializer
from lotbook.services.ledger.summary import PnLSummary, snapshot_from_summary, summarize_portfolio, summarize_wallet
from lotbook.services.market_data import IPriceSource, PriceBook
from lotbook.services.persistence import (
    ILedgerRepository,
    InMemoryLedgerRepository,
    LedgerWriter,
    RetryPolicy,
    SQLiteLedgerRepository,
)
from lotbook.system import LoggerFactory, SystemConfig

logger = LoggerFactory.get_logger()

SOURCE_SERVICE = "ledger_service"


@dataclass
class PositionLedger:
    """Mutable per-key state; touched only inside the key's serialized section."""

    key: PositionKey
    lot_store: LotStore = field(default_factory=LotStore)
    position: Position | None = None
    records: list[TransactionPnL] = field(default_factory=list)


@dataclass(frozen=True)
class LedgerUpdate:
    """
    Outcome of one processed transaction event.

    Attributes:
        record: The TransactionPnL (the original one for duplicates)
        position: Position after the event
        persisted: False when the durable write was queued for replay
        duplicate: True when the source_tx_id was already applied
    """

    record: TransactionPnL
    position: Position
    persisted: bool = True
    duplicate: bool = False


class LedgerService:
    """
    Position/lot accounting service for many wallets and tokens.

    Responsibilities:
    - Rebuild state from the repository at startup (initialize)
    - Apply buy/sell/launch/funding/fee_payment events, at most one in flight
      per position key, in submission order
    - Ignore repeated source_tx_ids (returns the original record)
    - Revalue positions on price ticks without touching realized P&L
    - Persist records, positions and lots with retry and a replay queue
    - Publish position updates, price updates and rejections on the event bus
    - Store point-in-time P&L snapshots on request

    Example:
        >>> bus = EventBus()
        >>> ledger = LedgerService(config=AccountingConfig(method=AccountingMethod.FIFO), event_bus=bus)
        >>> ledger.initialize()
        >>> update = ledger.process_event({
        ...     "source_tx_id": "0x01", "wallet_id": "w1", "token_address": "0xtoken",
        ...     "direction": "buy", "quantity": "100", "price": "1.0",
        ...     "timestamp": "2024-01-15T10:30:00Z",
        ... })
        >>> update.position.current_balance
        Decimal('100')
    """

    def __init__(
        self,
        config: AccountingConfig | None = None,
        repository: ILedgerRepository | None = None,
        price_source: IPriceSource | None = None,
        event_bus: IEventBus | None = None,
        serializer: MutationSerializer | None = None,
        retry_policy: RetryPolicy | None = None,
        price_book: PriceBook | None = None,
        workers: int = 4,
    ) -> None:
        self._config = config or AccountingConfig()
        self.repository: ILedgerRepository = repository or InMemoryLedgerRepository()
        self.price_book = price_book or PriceBook(source=price_source)
        self.event_bus = event_bus
        self._owns_serializer = serializer is None
        self.serializer = serializer or MutationSerializer(max_workers=workers)
        self.writer = LedgerWriter(self.repository, retry_policy)
        self.engine = AccountingEngine()
        self.aggregator = PositionAggregator()

        self._arena: dict[PositionKey, PositionLedger] = {}
        self._arena_lock = threading.Lock()

        # source_tx_id -> key whose queue owns it; record once applied
        self._tx_routes: dict[str, PositionKey] = {}
        self._records_by_tx: dict[str, TransactionPnL] = {}
        self._tx_lock = threading.Lock()

        self._initialized = False

        logger.debug(
            "ledger_service.created",
            method=self._config.method.value,
            include_fees=self._config.include_fees,
            fee_allocation=self._config.fee_allocation.value,
            oversell_policy=self._config.oversell_policy.value,
            repository=type(self.repository).__name__,
        )

    @classmethod
    def from_system_config(
        cls,
        system_config: SystemConfig,
        price_source: IPriceSource | None = None,
        event_bus: IEventBus | None = None,
    ) -> "LedgerService":
        """Build a service (repository, bus, price book, retry) from SystemConfig."""
        persistence = system_config.persistence
        if persistence.backend == "sqlite":
            repository: ILedgerRepository = SQLiteLedgerRepository(persistence.sqlite_path)
        elif persistence.backend == "memory":
            repository = InMemoryLedgerRepository()
        else:
            raise ValueError(f"Unknown persistence backend: {persistence.backend}")

        if event_bus is None:
            event_bus = EventBus(
                max_history=system_config.ledger.max_event_history,
                display_events=system_config.ledger.display_events,
            )

        return cls(
            config=system_config.accounting.to_accounting_config(),
            repository=repository,
            event_bus=event_bus,
            retry_policy=persistence.to_retry_policy(),
            price_book=PriceBook(source=price_source, max_price_age=system_config.market_data.max_price_age),
            workers=system_config.ledger.workers,
        )

    # ==================== Lifecycle ====================

    def initialize(self) -> ReconstructionReport:
        """
        Rebuild every key from the repository; must run before live events.

        Keys that fail to rebuild start empty and are listed in the report.
        No position or price events are published for rebuilt state.
        """
        report = LedgerReconstructor(self.repository, self.aggregator).reconstruct()

        with self._arena_lock, self._tx_lock:
            self._arena.clear()
            self._tx_routes.clear()
            self._records_by_tx.clear()
            for key, rebuilt in report.ledgers.items():
                self._arena[key] = PositionLedger(
                    key=key,
                    lot_store=rebuilt.lot_store,
                    position=rebuilt.position,
                    records=list(rebuilt.records),
                )
                for record in rebuilt.records:
                    self._tx_routes[record.transaction_id] = key
                    self._records_by_tx[record.transaction_id] = record
            # Failed keys start empty, but their history is still applied
            for records in report.orphaned_records.values():
                for record in records:
                    self._tx_routes.setdefault(record.transaction_id, record.key)
                    self._records_by_tx.setdefault(record.transaction_id, record)
            self._initialized = True

        logger.info(
            "ledger_service.initialized",
            positions=report.rebuilt_count,
            failed_keys=report.failed_count,
            method=self._config.method.value,
        )
        self._publish(
            LedgerReadyEvent(
                source_service=SOURCE_SERVICE,
                rebuilt_keys=report.rebuilt_count,
                failed_keys=[str(k) for k in report.failures],
            )
        )
        return report

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def shutdown(self, close_repository: bool = False) -> None:
        """Stop the serializer (if owned) after queued work drains."""
        if self._owns_serializer:
            self.serializer.shutdown(wait=True)
        if close_repository:
            self.repository.close()
        logger.info("ledger_service.shutdown", pending_writes=self.writer.pending_count)

    # ==================== Configuration ====================

    @property
    def accounting_config(self) -> AccountingConfig:
        return self._config

    def update_accounting_config(self, config: AccountingConfig) -> None:
        """
        Swap the accounting policy.

        Applies to events processed afterwards; open lots keep their fees
        and past records are never recomputed.
        """
        previous = self._config
        self._config = config
        logger.info(
            "ledger_service.config_updated",
            method=f"{previous.method.value}->{config.method.value}",
            include_fees=config.include_fees,
            fee_allocation=config.fee_allocation.value,
            oversell_policy=config.oversell_policy.value,
        )

    # ==================== Transaction Processing ====================

    def process_event(self, event: Any, timeout: float | None = None) -> LedgerUpdate:
        """
        Apply one transaction event and wait for the result.

        Args:
            event: Inbound event (mapping or parsed union member)
            timeout: Max seconds to wait for the key's queue

        Returns:
            LedgerUpdate with the record and updated position

        Raises:
            InvalidEvent: Event failed validation
            InsufficientLots: Sell exceeds open balance (reject policy)
            RuntimeError: initialize() has not run
        """
        return self.submit_event(event).result(timeout=timeout)

    def submit_event(self, event: Any) -> "Future[LedgerUpdate]":
        """
        Queue one transaction event on its key's serializer queue.

        Validation happens here, so InvalidEvent is raised immediately;
        accounting failures are delivered through the returned future.
        """
        if not self._initialized:
            raise RuntimeError("LedgerService.initialize() must run before events are accepted")

        try:
            parsed = parse_transaction_event(event)
        except InvalidEvent as e:
            raw = event if isinstance(event, dict) else {}
            self._reject(e, source_tx_id=raw.get("source_tx_id"), position_key=self._raw_key(raw))
            raise

        with self._tx_lock:
            route = self._tx_routes.setdefault(parsed.source_tx_id, parsed.key)

        return self.serializer.submit(str(route), lambda: self._apply(parsed, route))

    def process_events(self, events: list[Any]) -> list[LedgerUpdate]:
        """
        Submit a batch and wait for all results.

        Events for one key are applied in list order; keys run in parallel.
        The first failure is raised after every event has been attempted.
        """
        futures = [self.submit_event(event) for event in events]
        updates: list[LedgerUpdate] = []
        first_error: BaseException | None = None
        for future in futures:
            try:
                updates.append(future.result())
            except LedgerError as e:
                first_error = first_error or e
        if first_error is not None:
            raise first_error
        return updates

    def _apply(self, event: TransactionEvent, route: PositionKey) -> LedgerUpdate:
        tx_id = event.source_tx_id

        with self._tx_lock:
            existing = self._records_by_tx.get(tx_id)
        if existing is not None:
            return self._duplicate(existing)

        if event.key != route:
            error = InvalidEvent(f"source_tx_id {tx_id} is already queued for {route}")
            self._reject(error, source_tx_id=tx_id, position_key=str(event.key))
            raise error

        key = event.key
        ledger = self._ledger_for(key)
        config = self._config
        price = self.price_book.resolve(
            key.token_address, fallback_price=event.price, fallback_as_of=event.timestamp
        )

        try:
            result = self.engine.apply(event, config, ledger.lot_store, current_price=price.price)
        except LedgerError as e:
            with self._tx_lock:
                if self._tx_routes.get(tx_id) == route and tx_id not in self._records_by_tx:
                    del self._tx_routes[tx_id]
            self._reject(e, source_tx_id=tx_id, position_key=str(key))
            raise

        record = result.record
        position = self.aggregator.fold(ledger.position, record)
        position = self.aggregator.recompute(position, result.lot_store, price)

        ledger.lot_store = result.lot_store
        ledger.position = position
        ledger.records.append(record)
        with self._tx_lock:
            self._records_by_tx[tx_id] = record

        persisted = self.writer.write_mutation(record, position, result.lot_store.lots())

        logger.info(
            "ledger_service.event_applied",
            source_tx_id=tx_id,
            position_key=str(key),
            direction=record.transaction_type.value,
            quantity=str(record.quantity),
            price=str(record.price),
            realized_pnl=str(record.realized_pnl),
            balance=str(position.current_balance),
            price_stale=price.stale,
            persisted=persisted,
        )
        if price.stale:
            logger.warning(
                "ledger_service.price_fallback",
                position_key=str(key),
                source=price.source,
                price=str(price.price),
            )

        self._publish(
            PositionUpdateEvent(
                source_service=SOURCE_SERVICE,
                correlation_id=tx_id,
                position_key=str(key),
                transaction_pnl=record.model_dump(mode="json"),
                position=position.model_dump(mode="json"),
            )
        )
        return LedgerUpdate(record=record, position=position.model_copy(), persisted=persisted)

    def _duplicate(self, record: TransactionPnL) -> LedgerUpdate:
        ledger = self._get_ledger(record.key)
        position = ledger.position if ledger and ledger.position else Position(
            wallet_id=record.wallet_id, token_address=record.token_address
        )
        logger.info(
            "ledger_service.duplicate_ignored",
            source_tx_id=record.transaction_id,
            position_key=str(record.key),
        )
        return LedgerUpdate(record=record, position=position.model_copy(), persisted=True, duplicate=True)

    def _reject(self, error: Exception, source_tx_id: str | None, position_key: str | None) -> None:
        logger.error(
            "ledger_service.event_rejected",
            source_tx_id=source_tx_id,
            position_key=position_key,
            error_type=type(error).__name__,
            reason=str(error),
        )
        self._publish(
            LedgerRejectionEvent(
                source_service=SOURCE_SERVICE,
                correlation_id=source_tx_id or None,
                source_tx_id=source_tx_id,
                position_key=position_key,
                reason=str(error) or type(error).__name__,
                error_type=type(error).__name__,
            )
        )

    @staticmethod
    def _raw_key(raw: dict[str, Any]) -> str | None:
        wallet_id, token_address = raw.get("wallet_id"), raw.get("token_address")
        if wallet_id and token_address:
            return f"{wallet_id}:{token_address}"
        return None

    # ==================== Market Data ====================

    def on_price(self, token_address: str, price: Decimal, as_of: datetime | None = None) -> list[Position]:
        """
        Apply a price tick to every position holding the token.

        Only price-derived fields change (value, unrealized, total P&L,
        ROI, price fields); lots, realized P&L and counters are untouched.

        Returns:
            Updated positions
        """
        quote = self.price_book.update(token_address, price, as_of)
        observation = PriceObservation(
            price=quote.price, as_of=quote.as_of, stale=self.price_book.is_stale(quote.as_of), source="market"
        )
        return self._reprice_keys(self._keys_for_token(token_address), observation)

    def refresh_prices(self) -> list[Position]:
        """
        Re-resolve the price of every tracked token through the price source.

        Tokens the source cannot price fall back to their last known price
        (marked stale).
        """
        updated: list[Position] = []
        tokens = sorted({key.token_address for key in self._keys()})
        for token in tokens:
            keys = self._keys_for_token(token)
            fallback = self._fallback_price(keys)
            observation = self.price_book.resolve(
                token,
                fallback_price=fallback.price if fallback else None,
                fallback_as_of=fallback.as_of if fallback else None,
            )
            updated.extend(self._reprice_keys(keys, observation))
        logger.info("ledger_service.prices_refreshed", tokens=len(tokens), positions=len(updated))
        return updated

    def _fallback_price(self, keys: list[PositionKey]) -> PriceObservation | None:
        for key in keys:
            ledger = self._get_ledger(key)
            if ledger and ledger.position and ledger.position.current_price > 0:
                return PriceObservation(price=ledger.position.current_price, as_of=ledger.position.price_as_of)
        return None

    def _reprice_keys(self, keys: list[PositionKey], observation: PriceObservation) -> list[Position]:
        futures = [self.serializer.submit(str(key), lambda key=key: self._reprice(key, observation)) for key in keys]
        return [position for position in (f.result() for f in futures) if position is not None]

    def _reprice(self, key: PositionKey, observation: PriceObservation) -> Position | None:
        ledger = self._get_ledger(key)
        if ledger is None or ledger.position is None:
            return None

        position = self.aggregator.recompute(ledger.position, ledger.lot_store, observation)
        ledger.position = position
        persisted = self.writer.write_position(position)

        logger.debug(
            "ledger_service.price_applied",
            position_key=str(key),
            price=str(observation.price),
            unrealized_pnl=str(position.unrealized_pnl),
            persisted=persisted,
        )
        self._publish(
            PriceUpdateEvent(
                source_service=SOURCE_SERVICE,
                position_key=str(key),
                position=position.model_dump(mode="json"),
            )
        )
        return position.model_copy()

    # ==================== Queries ====================

    def get_position(self, wallet_id: str, token_address: str) -> Position | None:
        ledger = self._get_ledger(PositionKey(wallet_id=wallet_id, token_address=token_address))
        if ledger is None or ledger.position is None:
            return None
        return ledger.position.model_copy()

    def get_positions(self, wallet_id: str | None = None, include_flat: bool = True) -> list[Position]:
        """Positions sorted by key, optionally for one wallet and/or only open ones."""
        positions = []
        for key in sorted(self._keys(), key=str):
            if wallet_id is not None and key.wallet_id != wallet_id:
                continue
            ledger = self._get_ledger(key)
            if ledger is None or ledger.position is None:
                continue
            if not include_flat and ledger.position.current_balance == 0:
                continue
            positions.append(ledger.position.model_copy())
        return positions

    def get_lots(self, wallet_id: str, token_address: str) -> list[Lot]:
        ledger = self._get_ledger(PositionKey(wallet_id=wallet_id, token_address=token_address))
        return ledger.lot_store.lots() if ledger else []

    def get_transactions(self, wallet_id: str | None = None, token_address: str | None = None) -> list[TransactionPnL]:
        """Records in per-key append order, keys sorted."""
        records: list[TransactionPnL] = []
        for key in sorted(self._keys(), key=str):
            if wallet_id is not None and key.wallet_id != wallet_id:
                continue
            if token_address is not None and key.token_address != token_address:
                continue
            ledger = self._get_ledger(key)
            if ledger:
                records.extend(ledger.records)
        return records

    def get_wallet_summary(self, wallet_id: str) -> PnLSummary:
        return summarize_wallet(wallet_id, self.get_positions(wallet_id), self.get_transactions(wallet_id))

    def get_portfolio_summary(self) -> PnLSummary:
        return summarize_portfolio(self.get_positions(), self.get_transactions())

    # ==================== Snapshots ====================

    def create_snapshot(
        self,
        wallet_id: str | None = None,
        snapshot_type: SnapshotType = SnapshotType.ON_DEMAND,
    ) -> PortfolioSnapshot:
        """
        Store the current P&L totals of a wallet (or the whole portfolio).

        Raises:
            PersistenceFailure: The snapshot could not be stored
        """
        summary = self.get_wallet_summary(wallet_id) if wallet_id is not None else self.get_portfolio_summary()
        snapshot = snapshot_from_summary(summary, snapshot_type)
        self.writer.write_snapshot(snapshot)

        logger.info(
            "ledger_service.snapshot_created",
            snapshot_id=snapshot.snapshot_id,
            wallet_id=wallet_id,
            snapshot_type=snapshot_type.value,
            total_pnl=str(snapshot.total_pnl),
            positions=snapshot.position_count,
        )
        self._publish(
            SnapshotCreatedEvent(
                source_service=SOURCE_SERVICE,
                snapshot=snapshot.model_dump(mode="json"),
            )
        )
        return snapshot

    def create_periodic_snapshots(self) -> list[PortfolioSnapshot]:
        """
        Snapshot the portfolio and every wallet with a position.

        Meant to be called on a schedule owned by the caller.
        """
        wallets = sorted({key.wallet_id for key in self._keys()})
        snapshots = [self.create_snapshot(snapshot_type=SnapshotType.PERIODIC)]
        snapshots.extend(self.create_snapshot(wallet, SnapshotType.PERIODIC) for wallet in wallets)
        return snapshots

    def get_snapshots(self, wallet_id: str | None = None) -> list[PortfolioSnapshot]:
        """Stored snapshots in creation order; portfolio-wide ones when wallet_id is None."""
        return [s for s in self.repository.get_snapshots() if s.wallet_id == wallet_id]

    # ==================== Persistence ====================

    def flush_pending_writes(self) -> int:
        """Replay writes that exhausted their retries; returns how many were flushed."""
        return self.writer.flush_pending()

    @property
    def pending_write_count(self) -> int:
        return self.writer.pending_count

    # ==================== Validation ====================

    def validate_state(self) -> list[str]:
        """
        Check ledger invariants for every key.

        Returns:
            Human-readable violations (empty when consistent)
        """
        errors: list[str] = []
        for key in self._keys():
            ledger = self._get_ledger(key)
            if ledger is None or ledger.position is None:
                continue
            position = ledger.position
            store = ledger.lot_store

            if position.current_balance != store.total_quantity():
                errors.append(
                    f"{key}: balance {position.current_balance} != sum of open lots {store.total_quantity()}"
                )
            if position.total_cost != store.total_cost():
                errors.append(f"{key}: total cost {position.total_cost} != sum of lot cost {store.total_cost()}")
            realized = sum((r.realized_pnl for r in ledger.records), start=ZERO)
            if position.realized_pnl != realized:
                errors.append(f"{key}: realized {position.realized_pnl} != sum of records {realized}")
            if position.transaction_count != len(ledger.records):
                errors.append(f"{key}: transaction_count {position.transaction_count} != {len(ledger.records)} records")
            for lot in store.lots():
                if lot.remaining_quantity <= 0:
                    errors.append(f"{key}: empty lot {lot.lot_id} not pruned")

        if errors:
            logger.warning("ledger_service.validation_failed", error_count=len(errors))
        return errors

    # ==================== Arena ====================

    def _keys(self) -> list[PositionKey]:
        with self._arena_lock:
            return list(self._arena)

    def _keys_for_token(self, token_address: str) -> list[PositionKey]:
        return [key for key in self._keys() if key.token_address == token_address]

    def _get_ledger(self, key: PositionKey) -> PositionLedger | None:
        with self._arena_lock:
            return self._arena.get(key)

    def _ledger_for(self, key: PositionKey) -> PositionLedger:
        with self._arena_lock:
            ledger = self._arena.get(key)
            if ledger is None:
                ledger = PositionLedger(key=key)
                self._arena[key] = ledger
            return ledger

    def _publish(self, event) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(event)
