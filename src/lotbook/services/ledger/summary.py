"""Wallet and portfolio P&L summaries."""

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable

from pydantic import BaseModel

from lotbook.services.ledger.models import (
    HUNDRED,
    ZERO,
    PortfolioSnapshot,
    Position,
    SnapshotType,
    TransactionPnL,
    quantize_roi,
)

WIN_RATE_QUANTUM = Decimal("0.01")


class PnLSummary(BaseModel):
    """
    Aggregated P&L over a set of positions.

    Attributes:
        wallet_id: Wallet summarized (None for the whole portfolio)
        total_value: Sum of current value over positions
        realized_pnl: Sum of realized P&L
        unrealized_pnl: Sum of unrealized P&L
        total_fees: Trading fees plus estimated gas
        gas_fees: Estimated gas
        net_pnl: realized + unrealized - unattributed fees - gas
        roi: net_pnl / total_volume * 100
        win_rate: Percentage of sells with positive realized P&L
        total_trades: Number of sells
        winning_trades: Sells with positive realized P&L
        total_volume: Sum of cost basis over all records
        position_count: Positions summarized
        open_position_count: Positions with a nonzero balance
    """

    wallet_id: str | None = None
    total_value: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    total_fees: Decimal = ZERO
    gas_fees: Decimal = ZERO
    net_pnl: Decimal = ZERO
    roi: Decimal = ZERO
    win_rate: Decimal = ZERO
    total_trades: int = 0
    winning_trades: int = 0
    total_volume: Decimal = ZERO
    position_count: int = 0
    open_position_count: int = 0


def summarize(
    positions: Iterable[Position],
    records: Iterable[TransactionPnL],
    wallet_id: str | None = None,
) -> PnLSummary:
    """
    Summarize positions and their records.

    When wallet_id is given, positions and records of other wallets are
    ignored.
    """
    positions = [p for p in positions if wallet_id is None or p.wallet_id == wallet_id]
    records = [r for r in records if wallet_id is None or r.wallet_id == wallet_id]

    realized = sum((p.realized_pnl for p in positions), start=ZERO)
    unrealized = sum((p.unrealized_pnl for p in positions), start=ZERO)
    trading_fees = sum((r.fees for r in records), start=ZERO)
    unattributed = sum((r.unattributed_fees for r in records), start=ZERO)
    gas = sum((r.gas_fees for r in records), start=ZERO)
    volume = sum((r.cost_basis for r in records), start=ZERO)

    sells = [r for r in records if r.is_realized]
    winners = [r for r in sells if r.realized_pnl > 0]

    net = realized + unrealized - unattributed - gas
    roi = quantize_roi(net / volume * HUNDRED) if volume != 0 else ZERO
    win_rate = (
        (Decimal(len(winners)) / Decimal(len(sells)) * HUNDRED).quantize(WIN_RATE_QUANTUM, rounding=ROUND_HALF_EVEN)
        if sells
        else ZERO
    )

    return PnLSummary(
        wallet_id=wallet_id,
        total_value=sum((p.current_value for p in positions), start=ZERO),
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        total_fees=trading_fees + gas,
        gas_fees=gas,
        net_pnl=net,
        roi=roi,
        win_rate=win_rate,
        total_trades=len(sells),
        winning_trades=len(winners),
        total_volume=volume,
        position_count=len(positions),
        open_position_count=sum(1 for p in positions if p.current_balance != 0),
    )


def summarize_wallet(wallet_id: str, positions: Iterable[Position], records: Iterable[TransactionPnL]) -> PnLSummary:
    return summarize(positions, records, wallet_id=wallet_id)


def summarize_portfolio(positions: Iterable[Position], records: Iterable[TransactionPnL]) -> PnLSummary:
    return summarize(positions, records)


def snapshot_from_summary(
    summary: PnLSummary,
    snapshot_type: SnapshotType = SnapshotType.ON_DEMAND,
) -> PortfolioSnapshot:
    """Freeze a summary into a PortfolioSnapshot for the history table."""
    return PortfolioSnapshot(
        wallet_id=summary.wallet_id,
        snapshot_type=snapshot_type,
        total_value=summary.total_value,
        realized_pnl=summary.realized_pnl,
        unrealized_pnl=summary.unrealized_pnl,
        total_pnl=summary.net_pnl,
        total_fees=summary.total_fees,
        gas_fees=summary.gas_fees,
        roi=summary.roi,
        position_count=summary.position_count,
        open_position_count=summary.open_position_count,
    )
