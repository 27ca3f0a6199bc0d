"""Positions command: rebuild and display ledger state from SQLite."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from lotbook.cli.ui import (
    add_lot_row,
    add_position_row,
    create_lots_table,
    create_positions_table,
    create_summary_table,
)
from lotbook.services.ledger.service import LedgerService
from lotbook.system import LoggerFactory
from lotbook.system.config import reload_system_config

console = Console()


@click.command("positions")
@click.option(
    "--db",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="SQLite ledger database",
)
@click.option("--wallet", "-w", "wallet_id", help="Only show this wallet")
@click.option("--open-only", is_flag=True, help="Hide flat positions")
@click.option("--lots", "show_lots", is_flag=True, help="Also list open lots per position")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Set logging level",
)
def positions_command(
    db: Path,
    wallet_id: Optional[str],
    open_only: bool,
    show_lots: bool,
    log_level: str,
):
    """
    Rebuild positions from a ledger database and display them.

    Reconstruction replays the stored transaction records, so the output
    matches the state the ledger had when it last committed.

    \b
    Examples:
        lotbook positions --db data/ledger.db
        lotbook positions --db data/ledger.db -w wallet-1 --lots
    """
    try:
        system_config = reload_system_config()
        system_config.persistence.backend = "sqlite"
        system_config.persistence.sqlite_path = str(db)
        system_config.logging.level = log_level.upper()
        LoggerFactory.configure(system_config.logging.to_logger_config())

        service = LedgerService.from_system_config(system_config)
        report = service.initialize()

        positions = service.get_positions(wallet_id=wallet_id, include_flat=not open_only)
        table = create_positions_table(title=f"Positions ({db.name})")
        for position in positions:
            add_position_row(table, position)
        console.print(table)

        if show_lots:
            for position in positions:
                lots = service.get_lots(position.wallet_id, position.token_address)
                if not lots:
                    continue
                lots_table = create_lots_table(title=f"Open Lots {position.wallet_id}:{position.token_address}")
                for lot in lots:
                    add_lot_row(lots_table, lot)
                console.print(lots_table)

        summary = service.get_wallet_summary(wallet_id) if wallet_id else service.get_portfolio_summary()
        console.print(create_summary_table(summary))

        if report.failures:
            console.print(f"[bold red]✗ {report.failed_count} position(s) failed to rebuild:[/bold red]")
            for key, reason in report.failures.items():
                console.print(f"  [red]{key}[/red]: {reason}")

        service.shutdown(close_repository=True)
        sys.exit(0 if report.ok else 1)

    except Exception as e:
        console.print(f"[bold red]✗ Failed to load positions:[/bold red] {e}")
        sys.exit(1)
