"""Position aggregator: derives Position state from lots, records and price.

The live path and the reconstructor both go through ``fold`` and
``recompute``, so replaying the same records always yields the same
Position.
"""

from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import (
    HUNDRED,
    ZERO,
    Position,
    PriceObservation,
    TransactionPnL,
    quantize_money,
    quantize_roi,
)


class PositionAggregator:
    """
    Builds Position snapshots.

    Two independent steps:
    - ``fold`` applies one record to the activity fields (realized P&L,
      counters, timestamps, fee accumulators)
    - ``recompute`` derives the lot and price dependent fields (balance,
      cost, average cost, unrealized, total P&L, ROI, value)

    Neither step mutates its inputs; each returns a new Position.
    """

    def recompute(self, position: Position, lot_store: LotStore, price: PriceObservation) -> Position:
        """
        Recompute lot and price derived fields.

        Realized P&L and activity counters are carried over untouched, which
        makes this safe to call on every price tick.

        Args:
            position: Current position for the key
            lot_store: Open lots for the key
            price: Price observation to value the open balance at

        Returns:
            New Position with refreshed derived fields
        """
        balance = lot_store.total_quantity()
        total_cost = lot_store.total_cost()

        average_cost = quantize_money(total_cost / balance) if balance != 0 else ZERO
        current_value = quantize_money(balance * price.price)
        unrealized = current_value - total_cost
        total_pnl = position.realized_pnl + unrealized
        roi = quantize_roi(total_pnl / total_cost * HUNDRED) if total_cost != 0 else ZERO

        return position.model_copy(
            update={
                "current_balance": balance,
                "total_cost": total_cost,
                "average_cost_basis": average_cost,
                "unrealized_pnl": unrealized,
                "total_pnl": total_pnl,
                "roi": roi,
                "current_price": price.price,
                "current_value": current_value,
                "price_as_of": price.as_of,
                "price_stale": price.stale,
                "open_lot_count": len(lot_store),
            }
        )

    def fold(self, position: Position | None, record: TransactionPnL) -> Position:
        """
        Apply one record to the activity fields.

        Seeds a new Position from the record when none exists yet.
        """
        if position is None:
            position = Position(wallet_id=record.wallet_id, token_address=record.token_address)

        first_purchase_at = position.first_purchase_at
        if record.transaction_type.opens_lot:
            if first_purchase_at is None or record.occurred_at < first_purchase_at:
                first_purchase_at = record.occurred_at

        last_transaction_at = position.last_transaction_at
        if last_transaction_at is None or record.occurred_at > last_transaction_at:
            last_transaction_at = record.occurred_at

        return position.model_copy(
            update={
                "realized_pnl": position.realized_pnl + record.realized_pnl,
                "total_pnl": position.total_pnl + record.realized_pnl,
                "transaction_count": position.transaction_count + 1,
                "first_purchase_at": first_purchase_at,
                "last_transaction_at": last_transaction_at,
                "total_fees": position.total_fees + record.fees,
                "unattributed_fees": position.unattributed_fees + record.unattributed_fees,
                "gas_fees": position.gas_fees + record.gas_fees,
            }
        )
