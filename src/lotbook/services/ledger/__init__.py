"""
Ledger: lot-based position accounting.

Key components:
- models: Lots, positions, transaction records, inbound events, policy
- LotStore: Open lots for one position key
- AccountingEngine: Applies one event to a lot store, producing a TransactionPnL
- PositionAggregator: Derives position fields from lots, records and price
- MutationSerializer: One in-flight mutation per key
- summary: Wallet / portfolio P&L roll-ups
- ILedgerService: Service contract

LedgerService and LedgerReconstructor depend on persistence and are
imported from lotbook.services.ledger.service and
lotbook.services.ledger.reconstructor.
"""

from lotbook.services.ledger.errors import (
    InsufficientLots,
    InvalidEvent,
    LedgerError,
    PersistenceFailure,
    PriceUnavailable,
    ReconstructionFailure,
)
from lotbook.services.ledger.models import (
    AccountingConfig,
    AccountingMethod,
    BuyEvent,
    FeeAllocation,
    FeePaymentEvent,
    FundingEvent,
    LaunchEvent,
    Lot,
    LotConsumption,
    OversellPolicy,
    PortfolioSnapshot,
    Position,
    PositionKey,
    PriceObservation,
    SellEvent,
    SnapshotType,
    TransactionPnL,
    TransactionType,
    parse_transaction_event,
)
from lotbook.services.ledger.lot_store import LotStore  # noqa: I001
from lotbook.services.ledger.engine import AccountingEngine, EngineResult
from lotbook.services.ledger.aggregator import PositionAggregator
from lotbook.services.ledger.serializer import KeyState, MutationSerializer
from lotbook.services.ledger.summary import (
    PnLSummary,
    snapshot_from_summary,
    summarize,
    summarize_portfolio,
    summarize_wallet,
)
from lotbook.services.ledger.interface import ILedgerService

__all__ = [
    # Errors
    "LedgerError",
    "InvalidEvent",
    "InsufficientLots",
    "PriceUnavailable",
    "PersistenceFailure",
    "ReconstructionFailure",
    # Models
    "AccountingConfig",
    "AccountingMethod",
    "FeeAllocation",
    "OversellPolicy",
    "TransactionType",
    "PositionKey",
    "Lot",
    "LotConsumption",
    "PriceObservation",
    "TransactionPnL",
    "Position",
    "PortfolioSnapshot",
    "SnapshotType",
    "BuyEvent",
    "SellEvent",
    "LaunchEvent",
    "FundingEvent",
    "FeePaymentEvent",
    "parse_transaction_event",
    # Components
    "LotStore",
    "AccountingEngine",
    "EngineResult",
    "PositionAggregator",
    "KeyState",
    "MutationSerializer",
    "PnLSummary",
    "summarize",
    "summarize_wallet",
    "summarize_portfolio",
    "snapshot_from_summary",
    "ILedgerService",
]
