"""Lot store for FIFO/LIFO position accounting.

Holds the open lots of a single (wallet, token) key. Lots are kept in
insertion order; matching order is derived on demand from ``opened_at``
so that late-arriving events still match in time order.
"""

from decimal import Decimal

from lotbook.services.ledger.errors import InsufficientLots
from lotbook.services.ledger.models import ZERO, AccountingMethod, Lot


class LotStore:
    """
    Ordered collection of open lots for one position key.

    Lots are immutable; consuming part of a lot replaces it with a copy
    carrying the smaller remaining quantity. Emptied lots stay in the store
    until ``prune_empty`` is called, after which their ids can never be
    appended again.

    Example:
        >>> store = LotStore()
        >>> store.append_lot(lot)
        >>> consumed = store.consume(Decimal("150"), AccountingMethod.FIFO)
        >>> # [(Lot(100@1.00), 100), (Lot(100@1.20), 50)]
        >>> store.prune_empty()
    """

    def __init__(self, lots: list[Lot] | None = None) -> None:
        self._lots: dict[str, Lot] = {}
        self._closed_ids: set[str] = set()
        for lot in lots or []:
            self.append_lot(lot)

    def __len__(self) -> int:
        return len(self._lots)

    def __contains__(self, lot_id: object) -> bool:
        return lot_id in self._lots

    def append_lot(self, lot: Lot) -> None:
        """
        Add a lot to the store.

        Args:
            lot: Lot to add

        Raises:
            ValueError: If a lot with the same id is open or was already closed
        """
        if lot.lot_id in self._lots or lot.lot_id in self._closed_ids:
            raise ValueError(f"Duplicate lot id: {lot.lot_id}")
        self._lots[lot.lot_id] = lot

    def get(self, lot_id: str) -> Lot | None:
        return self._lots.get(lot_id)

    def lots(self) -> list[Lot]:
        """Lots in insertion order."""
        return list(self._lots.values())

    def ordered(self, method: AccountingMethod) -> list[Lot]:
        """
        Lots in matching order for the given method.

        FIFO sorts ascending by ``opened_at`` with ties in insertion order.
        LIFO sorts descending with ties in reverse insertion order.
        """
        if method == AccountingMethod.FIFO:
            return sorted(self._lots.values(), key=lambda lot: lot.opened_at)
        if method == AccountingMethod.LIFO:
            return sorted(reversed(list(self._lots.values())), key=lambda lot: lot.opened_at, reverse=True)
        raise ValueError(f"Invalid accounting method: {method}")

    def total_quantity(self) -> Decimal:
        return sum((lot.remaining_quantity for lot in self._lots.values()), start=ZERO)

    def total_cost(self) -> Decimal:
        return sum((lot.remaining_cost for lot in self._lots.values()), start=ZERO)

    def consume(self, quantity: Decimal, method: AccountingMethod) -> list[tuple[Lot, Decimal]]:
        """
        Consume quantity from open lots in matching order.

        Checks availability before touching any lot, so a failed call leaves
        the store unchanged.

        Args:
            quantity: Quantity to consume (positive)
            method: FIFO or LIFO

        Returns:
            List of (lot before consumption, quantity consumed) in match order

        Raises:
            ValueError: If quantity is zero or negative
            InsufficientLots: If open quantity is less than requested
        """
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")

        available = self.total_quantity()
        if quantity > available:
            raise InsufficientLots(requested=quantity, available=available)

        consumed: list[tuple[Lot, Decimal]] = []
        outstanding = quantity
        for lot in self.ordered(method):
            if outstanding == 0:
                break
            if lot.remaining_quantity == 0:
                continue
            take = min(lot.remaining_quantity, outstanding)
            self._lots[lot.lot_id] = lot.with_remaining(lot.remaining_quantity - take)
            consumed.append((lot, take))
            outstanding -= take

        return consumed

    def apply_consumption(self, lot_id: str, quantity: Decimal) -> Lot:
        """
        Decrement one lot by a recorded quantity.

        Returns:
            The updated lot

        Raises:
            KeyError: If the lot is not open
            ValueError: If quantity exceeds the lot's remaining quantity
        """
        lot = self._lots.get(lot_id)
        if lot is None:
            raise KeyError(f"Lot not open: {lot_id}")
        if quantity <= 0 or quantity > lot.remaining_quantity:
            raise ValueError(f"Cannot consume {quantity} from lot {lot_id} with {lot.remaining_quantity} remaining")
        updated = lot.with_remaining(lot.remaining_quantity - quantity)
        self._lots[lot_id] = updated
        return updated

    def set_remaining(self, lot_id: str, remaining_quantity: Decimal) -> Lot:
        """Overwrite one lot's remaining quantity from authoritative state."""
        lot = self._lots.get(lot_id)
        if lot is None:
            raise KeyError(f"Lot not open: {lot_id}")
        updated = lot.with_remaining(remaining_quantity)
        self._lots[lot_id] = updated
        return updated

    def prune_empty(self) -> list[str]:
        """Remove fully consumed lots and return their ids."""
        pruned = [lot_id for lot_id, lot in self._lots.items() if lot.is_empty]
        for lot_id in pruned:
            del self._lots[lot_id]
            self._closed_ids.add(lot_id)
        return pruned

    def copy(self) -> "LotStore":
        clone = LotStore()
        clone._lots = dict(self._lots)
        clone._closed_ids = set(self._closed_ids)
        return clone
