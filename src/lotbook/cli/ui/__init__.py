"""CLI UI components - table formatters."""

from lotbook.cli.ui.formatters import (
    add_lot_row,
    add_position_row,
    add_rejection_row,
    create_lots_table,
    create_positions_table,
    create_rejections_table,
    create_summary_table,
)

__all__ = [
    "create_positions_table",
    "add_position_row",
    "create_lots_table",
    "add_lot_row",
    "create_rejections_table",
    "add_rejection_row",
    "create_summary_table",
]
