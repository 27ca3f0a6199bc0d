"""Accounting engine: applies one transaction event to a lot store.

Pure with respect to I/O. Works on a copy of the caller's lot store, so a
rejected event leaves the caller's state exactly as it was.
"""

from dataclasses import dataclass
from decimal import Decimal

from lotbook.services.ledger.errors import InsufficientLots, InvalidEvent
from lotbook.services.ledger.lot_store import LotStore
from lotbook.services.ledger.models import (
    ZERO,
    AccountingConfig,
    Lot,
    LotConsumption,
    OversellPolicy,
    TransactionEvent,
    TransactionPnL,
    TransactionType,
    quantize_money,
)
from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()


@dataclass(frozen=True)
class EngineResult:
    """New lot store and the record produced by one event."""

    lot_store: LotStore
    record: TransactionPnL


class AccountingEngine:
    """
    Cost-basis engine for buy/sell/launch/funding/fee_payment events.

    Buy and launch open a lot at the event price. Sell consumes lots in the
    configured FIFO/LIFO order and realizes proceeds minus consumed cost
    minus sell fees. Funding and fee payments only produce a record.

    The consumed cost of a lot is measured as the drop in its remaining cost,
    so the consumed amounts over a lot's life add up to its opening cost with
    no rounding residue.

    Example:
        >>> engine = AccountingEngine()
        >>> result = engine.apply(event, AccountingConfig(), store, current_price=Decimal("1.2"))
        >>> result.record.realized_pnl
        Decimal('20.00000000')
    """

    def apply(
        self,
        event: TransactionEvent,
        config: AccountingConfig,
        lot_store: LotStore,
        current_price: Decimal | None = None,
    ) -> EngineResult:
        """
        Apply one validated transaction event.

        Args:
            event: Member of the inbound transaction union
            config: Accounting policy in force for this event
            lot_store: Current lots for the event's key (not modified)
            current_price: Price observed at application time (defaults to event price)

        Returns:
            EngineResult with the updated copy of the store and the new record

        Raises:
            InsufficientLots: Sell exceeds open balance (reject policy, or nothing open)
            InvalidEvent: Event would re-open an existing lot id
        """
        store = lot_store.copy()
        price_seen = current_price if current_price is not None else event.price
        gas_fees = self._gas_fees(event.gas_used, config)
        tx_type = event.transaction_type

        if tx_type.opens_lot:
            record = self._open_lot(event, config, store, price_seen, gas_fees)
        elif tx_type.closes_lot:
            record = self._close_lots(event, config, store, price_seen, gas_fees)
        else:
            record = self._record_only(event, config, price_seen, gas_fees)

        return EngineResult(lot_store=store, record=record)

    def _open_lot(
        self,
        event: TransactionEvent,
        config: AccountingConfig,
        store: LotStore,
        current_price: Decimal,
        gas_fees: Decimal,
    ) -> TransactionPnL:
        fees = quantize_money(event.fees)
        fees_attributed = fees if config.attributes_fees_to_lots else ZERO
        notional = quantize_money(event.quantity * event.price)
        cost_basis = notional + (fees if config.include_fees else ZERO)

        lot = Lot(
            lot_id=event.source_tx_id,
            wallet_id=event.wallet_id,
            token_address=event.token_address,
            quantity=event.quantity,
            remaining_quantity=event.quantity,
            unit_cost=event.price,
            fees_attributed=fees_attributed,
            opened_at=event.timestamp,
            source_tx_id=event.source_tx_id,
        )
        try:
            store.append_lot(lot)
        except ValueError as e:
            raise InvalidEvent(str(e)) from e

        logger.debug(
            "accounting_engine.lot_opened",
            lot_id=lot.lot_id,
            position_key=str(event.key),
            quantity=str(event.quantity),
            unit_cost=str(event.price),
            fees_attributed=str(fees_attributed),
        )

        return TransactionPnL(
            transaction_id=event.source_tx_id,
            wallet_id=event.wallet_id,
            token_address=event.token_address,
            transaction_type=event.transaction_type,
            quantity=event.quantity,
            requested_quantity=event.quantity,
            price=event.price,
            fees=fees,
            cost_basis=cost_basis,
            fees_attributed=fees_attributed,
            unattributed_fees=fees - fees_attributed,
            gas_used=event.gas_used,
            gas_fees=gas_fees,
            current_price=current_price,
            accounting_method=config.method,
            is_realized=False,
            occurred_at=event.timestamp,
        )

    def _close_lots(
        self,
        event: TransactionEvent,
        config: AccountingConfig,
        store: LotStore,
        current_price: Decimal,
        gas_fees: Decimal,
    ) -> TransactionPnL:
        available = store.total_quantity()
        quantity = event.quantity

        if quantity > available:
            if config.oversell_policy == OversellPolicy.CLAMP and available > 0:
                logger.warning(
                    "accounting_engine.oversell_clamped",
                    transaction_id=event.source_tx_id,
                    position_key=str(event.key),
                    requested=str(quantity),
                    available=str(available),
                )
                quantity = available
            else:
                raise InsufficientLots(requested=quantity, available=available, position_key=str(event.key))

        matches = store.consume(quantity, config.method)

        consumptions: list[LotConsumption] = []
        consumed_cost = ZERO
        for before, taken in matches:
            after = store.get(before.lot_id)
            assert after is not None
            lot_cost = before.remaining_cost - after.remaining_cost
            consumed_cost += lot_cost
            consumptions.append(LotConsumption(lot_id=before.lot_id, quantity=taken, cost_basis=lot_cost))

        pruned = store.prune_empty()
        fees = quantize_money(event.fees)
        proceeds = quantize_money(quantity * event.price)
        realized = proceeds - consumed_cost - fees

        logger.debug(
            "accounting_engine.lots_consumed",
            transaction_id=event.source_tx_id,
            position_key=str(event.key),
            method=config.method.value,
            lots_matched=len(consumptions),
            lots_closed=len(pruned),
            realized_pnl=str(realized),
        )

        return TransactionPnL(
            transaction_id=event.source_tx_id,
            wallet_id=event.wallet_id,
            token_address=event.token_address,
            transaction_type=TransactionType.SELL,
            quantity=quantity,
            requested_quantity=event.quantity,
            price=event.price,
            fees=fees,
            cost_basis=consumed_cost,
            proceeds=proceeds,
            realized_pnl=realized,
            gas_used=event.gas_used,
            gas_fees=gas_fees,
            current_price=current_price,
            accounting_method=config.method,
            is_realized=True,
            lot_consumptions=consumptions,
            occurred_at=event.timestamp,
        )

    def _record_only(
        self,
        event: TransactionEvent,
        config: AccountingConfig,
        current_price: Decimal,
        gas_fees: Decimal,
    ) -> TransactionPnL:
        return TransactionPnL(
            transaction_id=event.source_tx_id,
            wallet_id=event.wallet_id,
            token_address=event.token_address,
            transaction_type=event.transaction_type,
            quantity=event.quantity,
            requested_quantity=event.quantity,
            price=event.price,
            fees=quantize_money(event.fees),
            unattributed_fees=quantize_money(event.fees),
            gas_used=event.gas_used,
            gas_fees=gas_fees,
            current_price=current_price,
            accounting_method=config.method,
            is_realized=False,
            occurred_at=event.timestamp,
        )

    @staticmethod
    def _gas_fees(gas_used: int | None, config: AccountingConfig) -> Decimal:
        if not gas_used:
            return ZERO
        return quantize_money(Decimal(gas_used) * config.gas_price_estimate)
