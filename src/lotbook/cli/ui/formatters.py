"""Rich table formatters for CLI output."""

from decimal import Decimal
from typing import Optional

from rich.table import Table

from lotbook.services.ledger.models import Lot, Position
from lotbook.services.ledger.summary import PnLSummary


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def _signed(value: Decimal) -> str:
    """Money with a color markup by sign."""
    if value > 0:
        return f"[green]+{value:,.2f}[/green]"
    if value < 0:
        return f"[red]{value:,.2f}[/red]"
    return f"{value:,.2f}"


def _quantity(value: Decimal) -> str:
    # normalize() turns 100.00000000 into 1E+2; keep plain notation
    text = format(value.normalize(), "f")
    return text if text else "0"


def create_positions_table(title: str = "Positions") -> Table:
    """
    Create a Rich table for position snapshots.

    Returns:
        Configured Rich Table with columns
    """
    table = Table(title=title)
    table.add_column("Wallet", style="cyan", no_wrap=True)
    table.add_column("Token", style="cyan", no_wrap=True)
    table.add_column("Balance", justify="right", style="yellow")
    table.add_column("Avg Cost", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right")
    table.add_column("Realized", justify="right")
    table.add_column("Unrealized", justify="right")
    table.add_column("ROI %", justify="right")
    table.add_column("Lots", justify="right", style="dim")
    table.add_column("Txs", justify="right", style="dim")
    return table


def add_position_row(table: Table, position: Position) -> None:
    """
    Add a position row to the positions table.

    Stale prices are shown dimmed with a trailing marker.
    """
    price = _money(position.current_price)
    if position.price_stale:
        price = f"[dim]{price}*[/dim]"

    table.add_row(
        position.wallet_id,
        position.token_address,
        _quantity(position.current_balance),
        _money(position.average_cost_basis),
        price,
        _money(position.current_value),
        _signed(position.realized_pnl),
        _signed(position.unrealized_pnl),
        f"{position.roi:.2f}",
        str(position.open_lot_count),
        str(position.transaction_count),
    )


def create_lots_table(title: str = "Open Lots") -> Table:
    """
    Create a Rich table for open lots.

    Returns:
        Configured Rich Table with columns
    """
    table = Table(title=title)
    table.add_column("Lot", style="cyan", no_wrap=True)
    table.add_column("Opened", style="dim")
    table.add_column("Quantity", justify="right")
    table.add_column("Remaining", justify="right", style="yellow")
    table.add_column("Unit Cost", justify="right")
    table.add_column("Fees", justify="right")
    table.add_column("Cost Basis", justify="right")
    return table


def add_lot_row(table: Table, lot: Lot) -> None:
    table.add_row(
        lot.lot_id,
        lot.opened_at.strftime("%Y-%m-%d %H:%M:%S"),
        _quantity(lot.quantity),
        _quantity(lot.remaining_quantity),
        str(lot.unit_cost),
        _money(lot.remaining_fees),
        _money(lot.remaining_cost),
    )


def create_rejections_table() -> Table:
    """
    Create a Rich table for rejected events.

    Returns:
        Configured Rich Table with columns
    """
    table = Table(title="Rejected Events")
    table.add_column("Line", justify="right", style="dim")
    table.add_column("Source Tx", style="cyan", no_wrap=True)
    table.add_column("Error", style="red")
    table.add_column("Reason", style="white")
    return table


def add_rejection_row(
    table: Table,
    line_number: int,
    source_tx_id: Optional[str],
    error_type: str,
    reason: str,
) -> None:
    table.add_row(str(line_number), source_tx_id or "-", error_type, reason)


def create_summary_table(summary: PnLSummary, title: Optional[str] = None) -> Table:
    """
    Create a two-column Rich table for a wallet or portfolio summary.

    Args:
        summary: Aggregated P&L
        title: Table title (defaults to the wallet id or "Portfolio")

    Returns:
        Populated Rich Table
    """
    table = Table(title=title or (f"Wallet {summary.wallet_id}" if summary.wallet_id else "Portfolio"))
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Realized P&L", _signed(summary.realized_pnl))
    table.add_row("Unrealized P&L", _signed(summary.unrealized_pnl))
    table.add_row("Fees", _money(summary.total_fees))
    table.add_row("Gas", _money(summary.gas_fees))
    table.add_row("Net P&L", _signed(summary.net_pnl))
    table.add_row("ROI %", f"{summary.roi:.2f}")
    table.add_row("Win Rate %", f"{summary.win_rate:.2f}")
    table.add_row("Trades", f"{summary.winning_trades}/{summary.total_trades} winning")
    table.add_row("Volume", _money(summary.total_volume))
    table.add_row("Positions", f"{summary.open_position_count} open / {summary.position_count} total")
    return table
