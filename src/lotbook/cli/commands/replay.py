"""Replay command: apply a JSON-lines transaction file to a ledger."""

import json
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal, Optional

import click
from pydantic import BaseModel, Field, ValidationError, field_validator
from rich.console import Console

from lotbook.cli.ui import (
    add_position_row,
    add_rejection_row,
    create_positions_table,
    create_rejections_table,
    create_summary_table,
)
from lotbook.services.ledger.errors import InvalidEvent, LedgerError
from lotbook.services.ledger.models import ensure_utc
from lotbook.services.ledger.service import LedgerService
from lotbook.system import LoggerFactory, SystemConfig
from lotbook.system.config import reload_system_config

console = Console()


class PriceTickLine(BaseModel):
    """Price tick line of a replay file."""

    type: Literal["price"]
    token_address: str = Field(min_length=1)
    price: Decimal = Field(gt=0)
    as_of: Optional[datetime] = None

    @field_validator("price", mode="before")
    @classmethod
    def float_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, float) else v

    @field_validator("as_of")
    @classmethod
    def as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


def parse_price_tick(data: dict[str, Any]) -> PriceTickLine:
    """
    Validate a price tick line.

    Raises:
        InvalidEvent: Missing token, non-positive or malformed price or timestamp
    """
    try:
        return PriceTickLine.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "tick"
        raise InvalidEvent(f"Invalid price tick: {location}: {first['msg']}") from e


def apply_overrides(
    system_config: SystemConfig,
    method: Optional[str] = None,
    include_fees: Optional[bool] = None,
    fee_allocation: Optional[str] = None,
    oversell: Optional[str] = None,
    db: Optional[Path] = None,
    log_level: Optional[str] = None,
) -> SystemConfig:
    """Apply CLI overrides to the loaded system config (in place)."""
    if method:
        system_config.accounting.method = method.upper()
    if include_fees is not None:
        system_config.accounting.include_fees = include_fees
    if fee_allocation:
        system_config.accounting.fee_allocation = fee_allocation.lower()
    if oversell:
        system_config.accounting.oversell_policy = oversell.lower()
    if db is not None:
        system_config.persistence.backend = "sqlite"
        system_config.persistence.sqlite_path = str(db)
    if log_level:
        system_config.logging.level = log_level.upper()
    LoggerFactory.configure(system_config.logging.to_logger_config())
    return system_config


def read_lines(path: Path) -> list[tuple[int, dict[str, Any]]]:
    """
    Read a JSON-lines file.

    Blank lines and lines starting with '#' are skipped.

    Raises:
        click.ClickException: A line is not a JSON object
    """
    entries: list[tuple[int, dict[str, Any]]] = []
    with open(path) as f:
        for number, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise click.ClickException(f"{path}:{number}: invalid JSON ({e.msg})")
            if not isinstance(data, dict):
                raise click.ClickException(f"{path}:{number}: expected a JSON object")
            entries.append((number, data))
    return entries


@click.command("replay")
@click.argument("events_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="System configuration file (YAML)",
)
@click.option(
    "--method",
    "-m",
    type=click.Choice(["FIFO", "LIFO"], case_sensitive=False),
    help="Lot matching method",
)
@click.option("--include-fees/--no-include-fees", default=None, help="Attribute fees to lot cost basis")
@click.option(
    "--fee-allocation",
    type=click.Choice(["proportional", "separate"], case_sensitive=False),
    help="How buy fees are treated",
)
@click.option(
    "--oversell",
    type=click.Choice(["reject", "clamp"], case_sensitive=False),
    help="Policy for sells exceeding the open balance",
)
@click.option(
    "--db",
    type=click.Path(dir_okay=False, path_type=Path),
    help="SQLite database to persist to (resumes existing state)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set logging level",
)
@click.option("--snapshot", is_flag=True, help="Store a portfolio P&L snapshot after the replay")
def replay_command(
    events_file: Path,
    config_file: Optional[Path],
    method: Optional[str],
    include_fees: Optional[bool],
    fee_allocation: Optional[str],
    oversell: Optional[str],
    db: Optional[Path],
    log_level: Optional[str],
    snapshot: bool,
):
    """
    Replay transaction events from a JSON-lines file.

    Each line is a transaction event (source_tx_id, wallet_id,
    token_address, direction, quantity, price, timestamp, optional fees
    and gas_used) or a price tick ({"type": "price", "token_address",
    "price", optional "as_of"}). Rejected events and malformed price ticks
    are reported and the replay continues.

    \b
    Examples:
        # FIFO replay in memory
        lotbook replay trades.jsonl

        # LIFO, fees kept out of cost basis, persisted to SQLite
        lotbook replay trades.jsonl -m lifo --no-include-fees --db data/ledger.db

        # Persist and record a snapshot of the resulting P&L
        lotbook replay trades.jsonl --db data/ledger.db --snapshot
    """
    service: Optional[LedgerService] = None
    try:
        system_config = reload_system_config(config_file)
        apply_overrides(system_config, method, include_fees, fee_allocation, oversell, db, log_level)

        console.rule("[bold blue]lotbook replay[/bold blue]")
        accounting = system_config.accounting
        console.print(f"  File: [yellow]{events_file}[/yellow]")
        console.print(
            f"  Method: [yellow]{accounting.method}[/yellow]  Fees: [yellow]"
            f"{'included' if accounting.include_fees else 'excluded'} ({accounting.fee_allocation})[/yellow]"
            f"  Oversell: [yellow]{accounting.oversell_policy}[/yellow]"
        )
        console.print(f"  Storage: [yellow]{system_config.persistence.backend}[/yellow]")
        console.print()

        entries = read_lines(events_file)
        service = LedgerService.from_system_config(system_config)
        report = service.initialize()
        if report.rebuilt_count:
            console.print(f"[cyan]Resumed {report.rebuilt_count} position(s) from storage[/cyan]")

        rejections = create_rejections_table()
        applied = duplicates = rejected = 0
        for number, data in entries:
            try:
                if data.get("type") == "price":
                    tick = parse_price_tick(data)
                    service.on_price(tick.token_address, tick.price, tick.as_of)
                    continue
                update = service.process_event(data)
            except LedgerError as e:
                rejected += 1
                add_rejection_row(rejections, number, data.get("source_tx_id"), type(e).__name__, str(e))
                continue
            if update.duplicate:
                duplicates += 1
            else:
                applied += 1

        positions = create_positions_table()
        for position in service.get_positions():
            add_position_row(positions, position)

        console.print()
        console.print(positions)
        if rejected:
            console.print(rejections)
        console.print(create_summary_table(service.get_portfolio_summary()))
        if snapshot:
            stored = service.create_snapshot()
            console.print(f"[cyan]Snapshot {stored.snapshot_id} stored[/cyan]")
        console.print()
        console.print(
            f"[bold green]✓ Replay complete:[/bold green] {applied} applied, "
            f"{duplicates} duplicate(s), {rejected} rejected"
        )
        if service.pending_write_count:
            console.print(f"[yellow]{service.pending_write_count} write(s) pending replay[/yellow]")

    except click.ClickException:
        raise
    except Exception as e:
        console.print()
        console.print(f"[bold red]✗ Replay failed:[/bold red] {e}")
        sys.exit(1)
    finally:
        if service is not None:
            service.shutdown(close_repository=True)
