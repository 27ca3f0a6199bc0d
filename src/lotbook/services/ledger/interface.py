"""Ledger service interface (Protocol).

Defines the contract that ledger service implementations must satisfy.
Consumers (CLI, analytics, UI adapters) depend on this rather than on
LedgerService directly.
"""

from concurrent.futures import Future
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from lotbook.services.ledger.models import (
    AccountingConfig,
    Lot,
    PortfolioSnapshot,
    Position,
    SnapshotType,
    TransactionPnL,
)
from lotbook.services.ledger.summary import PnLSummary

if TYPE_CHECKING:
    from lotbook.services.ledger.reconstructor import ReconstructionReport
    from lotbook.services.ledger.service import LedgerUpdate


class ILedgerService(Protocol):
    """
    Ledger service interface for lot-based position accounting.

    Core responsibilities:
    - Open lots on buy/launch/funding, consume them on sell (FIFO or LIFO)
    - Compute realized P&L per sell and unrealized P&L per position
    - Apply each source transaction at most once
    - Revalue open positions on price ticks
    - Rebuild state from durable storage at startup

    Example:
        >>> ledger: ILedgerService = LedgerService(config=AccountingConfig())
        >>> ledger.initialize()
        >>> ledger.process_event({
        ...     "source_tx_id": "0xabc",
        ...     "wallet_id": "wallet-1",
        ...     "token_address": "0xtoken",
        ...     "direction": "buy",
        ...     "quantity": "100",
        ...     "price": "1.00",
        ...     "timestamp": "2024-01-15T10:30:00Z",
        ... })
        >>> ledger.get_position("wallet-1", "0xtoken").current_balance
        Decimal('100')
    """

    # ==================== Lifecycle ====================

    def initialize(self) -> "ReconstructionReport":
        """
        Rebuild all positions from the repository.

        Must complete before any live event is accepted. Keys whose history
        cannot be replayed are reported and start empty; the rest of the
        ledger is usable.

        Returns:
            ReconstructionReport listing rebuilt and failed keys
        """
        ...

    def shutdown(self, close_repository: bool = False) -> None:
        """Drain queued work and stop worker threads."""
        ...

    # ==================== Transaction Processing ====================

    def process_event(self, event: Any, timeout: float | None = None) -> "LedgerUpdate":
        """
        Apply a transaction event and block until it is committed.

        Processing:
        1. Validate and normalize the event (direction aliases, UTC timestamps)
        2. Return the original record if source_tx_id was already applied
        3. Open a lot (buy/launch/funding), consume lots (sell) or record
           the fee (fee_payment)
        4. Update the position, persist, publish PositionUpdateEvent

        Args:
            event: Mapping or parsed event model
            timeout: Max seconds to wait

        Returns:
            LedgerUpdate (record, position, persisted flag, duplicate flag)

        Raises:
            InvalidEvent: Validation failed
            InsufficientLots: Sell exceeds the open balance and oversell policy is reject
        """
        ...

    def submit_event(self, event: Any) -> "Future[LedgerUpdate]":
        """Queue an event without waiting; validation errors raise immediately."""
        ...

    # ==================== Market Data ====================

    def on_price(self, token_address: str, price: Decimal, as_of: datetime | None = None) -> list[Position]:
        """
        Revalue every position holding token_address at price.

        Lots, realized P&L and activity counters do not change.

        Returns:
            Updated positions
        """
        ...

    def refresh_prices(self) -> list[Position]:
        """Re-resolve prices for all tracked tokens through the price source."""
        ...

    # ==================== Queries ====================

    def get_position(self, wallet_id: str, token_address: str) -> Position | None:
        """Snapshot of one position, or None if the key has no activity."""
        ...

    def get_positions(self, wallet_id: str | None = None, include_flat: bool = True) -> list[Position]:
        """Snapshots of all positions, optionally filtered."""
        ...

    def get_lots(self, wallet_id: str, token_address: str) -> list[Lot]:
        """Open lots for a key in acquisition order."""
        ...

    def get_transactions(self, wallet_id: str | None = None, token_address: str | None = None) -> list[TransactionPnL]:
        """Transaction records, optionally filtered."""
        ...

    def get_wallet_summary(self, wallet_id: str) -> PnLSummary:
        """Aggregate P&L for one wallet."""
        ...

    def get_portfolio_summary(self) -> PnLSummary:
        """Aggregate P&L across every wallet."""
        ...

    # ==================== Snapshots ====================

    def create_snapshot(
        self, wallet_id: str | None = None, snapshot_type: SnapshotType = SnapshotType.ON_DEMAND
    ) -> PortfolioSnapshot:
        """Store current P&L totals for a wallet, or the portfolio when wallet_id is None."""
        ...

    def create_periodic_snapshots(self) -> list[PortfolioSnapshot]:
        """Snapshot the portfolio and every wallet."""
        ...

    def get_snapshots(self, wallet_id: str | None = None) -> list[PortfolioSnapshot]:
        ...

    # ==================== Configuration ====================

    @property
    def accounting_config(self) -> AccountingConfig:
        """Policy applied to newly processed events."""
        ...

    def update_accounting_config(self, config: AccountingConfig) -> None:
        """Replace the policy for subsequent events; existing records are kept."""
        ...

    # ==================== Persistence / Validation ====================

    def flush_pending_writes(self) -> int:
        """Replay queued writes; returns how many succeeded."""
        ...

    def validate_state(self) -> list[str]:
        """
        Check balance, cost and realized P&L against lots and records.

        Returns:
            List of violations (empty when consistent)
        """
        ...
