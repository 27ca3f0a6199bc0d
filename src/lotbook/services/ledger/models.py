"""Data models for the ledger service.

Defines all core entities for lot accounting:
- PositionKey: (wallet_id, token_address) identity of a ledger
- Lot: Single acquisition with its own cost basis
- TransactionPnL: Immutable per-event accounting record
- Position: Derived state for one key
- PortfolioSnapshot: Point-in-time P&L totals kept for history
- AccountingConfig: Matching method and fee policy
- Inbound transaction events (closed tagged union on ``direction``)

Monetary values are Decimal quantized to 8 fractional digits. Quantities are
kept exactly as received so that a position's balance always equals the sum
of its open lots.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from lotbook.services.ledger.errors import InvalidEvent

MONEY_QUANTUM = Decimal("0.00000001")
ROI_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_GAS_PRICE_ESTIMATE = Decimal("0.000000005")


def quantize_money(value: Decimal) -> Decimal:
    """Round a monetary amount to the ledger's fixed 8-digit precision."""
    return value.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_EVEN)


def quantize_roi(value: Decimal) -> Decimal:
    """Round a percentage to 4 fractional digits."""
    return value.quantize(ROI_QUANTUM, rounding=ROUND_HALF_EVEN)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AccountingMethod(str, Enum):
    """Order in which open lots are matched against a sell."""

    FIFO = "FIFO"
    LIFO = "LIFO"


class FeeAllocation(str, Enum):
    """How buy-side fees are attributed."""

    PROPORTIONAL = "proportional"  # Attached to the lot, released as the lot is consumed
    SEPARATE = "separate"  # Tracked on the position, never part of lot cost


class OversellPolicy(str, Enum):
    """What to do when a sell exceeds the open balance."""

    REJECT = "reject"
    CLAMP = "clamp"


class TransactionType(str, Enum):
    """Direction of an inbound transaction event."""

    BUY = "buy"
    SELL = "sell"
    LAUNCH = "launch"
    FUNDING = "funding"
    FEE_PAYMENT = "fee_payment"

    @property
    def opens_lot(self) -> bool:
        return self in (TransactionType.BUY, TransactionType.LAUNCH)

    @property
    def closes_lot(self) -> bool:
        return self is TransactionType.SELL


class PositionKey(BaseModel):
    """Identity of one ledger: a token held by a wallet."""

    wallet_id: str = Field(min_length=1)
    token_address: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.wallet_id}:{self.token_address}"

    @classmethod
    def parse(cls, value: str) -> "PositionKey":
        """Parse the ``wallet_id:token_address`` string form."""
        wallet_id, sep, token_address = value.partition(":")
        if not sep:
            raise ValueError(f"Invalid position key: {value!r}")
        return cls(wallet_id=wallet_id, token_address=token_address)


class Lot(BaseModel):
    """
    Single acquisition of a token, consumed by later sells.

    Used for FIFO/LIFO accounting. Each buy/launch creates exactly one lot,
    identified by the transaction that opened it. Only ``remaining_quantity``
    ever changes, and it changes by replacing the lot with a copy.

    Attributes:
        lot_id: Identifier (the opening transaction's source_tx_id)
        wallet_id: Owning wallet
        token_address: Token held
        quantity: Quantity originally acquired
        remaining_quantity: Quantity not yet consumed by sells
        unit_cost: Price paid per unit
        fees_attributed: Buy-side fees attached to this lot at open time
        opened_at: Acquisition time (FIFO/LIFO ordering key)
        source_tx_id: Opening transaction

    Example:
        >>> lot = Lot(
        ...     lot_id="0xabc",
        ...     wallet_id="w1",
        ...     token_address="0xtoken",
        ...     quantity=Decimal("100"),
        ...     remaining_quantity=Decimal("100"),
        ...     unit_cost=Decimal("1.5"),
        ...     opened_at=datetime.now(timezone.utc),
        ...     source_tx_id="0xabc",
        ... )
    """

    lot_id: str
    wallet_id: str
    token_address: str
    quantity: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    fees_attributed: Decimal = ZERO
    opened_at: datetime
    source_tx_id: str

    model_config = ConfigDict(frozen=True)

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: Decimal) -> Decimal:
        """Validate quantity is positive."""
        if v <= 0:
            raise ValueError(f"Lot quantity must be positive, got {v}")
        return v

    @field_validator("unit_cost")
    @classmethod
    def validate_unit_cost(cls, v: Decimal) -> Decimal:
        """Validate unit cost is positive."""
        if v <= 0:
            raise ValueError(f"Unit cost must be positive, got {v}")
        return v

    @field_validator("fees_attributed")
    @classmethod
    def validate_fees(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError(f"Attributed fees cannot be negative, got {v}")
        return v

    @field_validator("opened_at")
    @classmethod
    def validate_opened_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode="after")
    def validate_remaining(self) -> "Lot":
        """Validate 0 <= remaining_quantity <= quantity."""
        if self.remaining_quantity < 0 or self.remaining_quantity > self.quantity:
            raise ValueError(
                f"Remaining quantity {self.remaining_quantity} outside [0, {self.quantity}] for lot {self.lot_id}"
            )
        return self

    @property
    def key(self) -> PositionKey:
        return PositionKey(wallet_id=self.wallet_id, token_address=self.token_address)

    @property
    def is_empty(self) -> bool:
        return self.remaining_quantity == 0

    @property
    def remaining_fees(self) -> Decimal:
        """Share of attributed fees still carried by the open quantity."""
        if self.remaining_quantity == self.quantity:
            return self.fees_attributed
        return quantize_money(self.fees_attributed * self.remaining_quantity / self.quantity)

    @property
    def remaining_cost(self) -> Decimal:
        """Cost basis of the open quantity, attributed fees included."""
        return quantize_money(self.remaining_quantity * self.unit_cost) + self.remaining_fees

    def with_remaining(self, remaining_quantity: Decimal) -> "Lot":
        """Copy of this lot with a new remaining quantity (validated)."""
        return Lot.model_validate({**self.model_dump(), "remaining_quantity": remaining_quantity})


class LotConsumption(BaseModel):
    """Portion of one lot closed by a sell."""

    lot_id: str
    quantity: Decimal
    cost_basis: Decimal

    model_config = ConfigDict(frozen=True)


class PriceObservation(BaseModel):
    """Price used to value a position, with its provenance."""

    price: Decimal
    as_of: datetime | None = None
    stale: bool = False
    source: Literal["market", "last_known", "transaction", "position"] = "market"

    model_config = ConfigDict(frozen=True)


class TransactionPnL(BaseModel):
    """
    Immutable accounting record for one processed event.

    Append-only. The sequence of records for a key fully determines its
    realized P&L, activity counters, and (through ``lot_consumptions``) the
    remaining quantity of every lot.

    Attributes:
        transaction_id: Source transaction id (dedupe key)
        wallet_id: Owning wallet
        token_address: Token
        transaction_type: Event direction
        quantity: Quantity applied (clamped quantity for clamped oversells)
        requested_quantity: Quantity on the inbound event
        price: Price on the event
        fees: Trading fees on the event
        cost_basis: Opened cost (buy/launch) or consumed cost (sell)
        proceeds: quantity * price for sells, zero otherwise
        realized_pnl: Realized P&L contributed by this event
        fees_attributed: Buy fees attached to the opened lot
        unattributed_fees: Fees in neither lot cost nor realized P&L
        gas_used: Gas units consumed (if reported)
        gas_fees: Estimated gas cost
        current_price: Price observed when the event was applied
        accounting_method: Method in force when the event was applied
        is_realized: True only for sells
        lot_consumptions: Lots closed by a sell, in match order
        occurred_at: Event timestamp
    """

    transaction_id: str
    wallet_id: str
    token_address: str
    transaction_type: TransactionType
    quantity: Decimal
    requested_quantity: Decimal
    price: Decimal
    fees: Decimal = ZERO
    cost_basis: Decimal = ZERO
    proceeds: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    fees_attributed: Decimal = ZERO
    unattributed_fees: Decimal = ZERO
    gas_used: int | None = None
    gas_fees: Decimal = ZERO
    current_price: Decimal
    accounting_method: AccountingMethod
    is_realized: bool = False
    lot_consumptions: list[LotConsumption] = Field(default_factory=list)
    occurred_at: datetime

    model_config = ConfigDict(frozen=True)

    @field_validator("occurred_at")
    @classmethod
    def validate_occurred_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def key(self) -> PositionKey:
        return PositionKey(wallet_id=self.wallet_id, token_address=self.token_address)

    @property
    def was_clamped(self) -> bool:
        return self.quantity != self.requested_quantity


class Position(BaseModel):
    """
    Current derived state for one (wallet, token) key.

    Derived from the lot store (balance, cost), the record history
    (realized P&L, counters) and the latest price observation.

    Attributes:
        wallet_id: Owning wallet
        token_address: Token
        current_balance: Sum of remaining quantity over open lots
        total_cost: Sum of remaining cost over open lots
        average_cost_basis: total_cost / current_balance (zero when flat)
        realized_pnl: Accumulated realized P&L (never recomputed)
        unrealized_pnl: current_balance * current_price - total_cost
        total_pnl: realized_pnl + unrealized_pnl
        roi: total_pnl / total_cost * 100 (zero when total_cost is zero)
        current_price: Price used for valuation
        current_value: current_balance * current_price
        price_as_of: Time of the price observation
        price_stale: True when the price is a fallback
        transaction_count: Events applied to this key
        first_purchase_at: First buy/launch
        last_transaction_at: Last event applied
        open_lot_count: Number of open lots
        total_fees: All trading fees seen on this key
        unattributed_fees: Fees outside both lot cost and realized P&L
        gas_fees: Estimated gas cost accumulated
    """

    wallet_id: str
    token_address: str

    current_balance: Decimal = ZERO
    total_cost: Decimal = ZERO
    average_cost_basis: Decimal = ZERO

    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    total_pnl: Decimal = ZERO
    roi: Decimal = ZERO

    current_price: Decimal = ZERO
    current_value: Decimal = ZERO
    price_as_of: datetime | None = None
    price_stale: bool = False

    transaction_count: int = 0
    first_purchase_at: datetime | None = None
    last_transaction_at: datetime | None = None
    open_lot_count: int = 0

    total_fees: Decimal = ZERO
    unattributed_fees: Decimal = ZERO
    gas_fees: Decimal = ZERO

    @property
    def key(self) -> PositionKey:
        return PositionKey(wallet_id=self.wallet_id, token_address=self.token_address)

    @property
    def is_flat(self) -> bool:
        return self.current_balance == 0


class SnapshotType(str, Enum):
    """What triggered a portfolio snapshot."""

    ON_DEMAND = "on_demand"
    PERIODIC = "periodic"


class PortfolioSnapshot(BaseModel):
    """
    Point-in-time P&L totals for a wallet or the whole portfolio.

    Append-only history for tracking performance over time. Written only
    when requested, never while rebuilding state at startup.

    Attributes:
        snapshot_id: Unique identifier
        wallet_id: Wallet summarized (None for the whole portfolio)
        taken_at: When the snapshot was taken
        snapshot_type: On-demand or periodic
        total_value: Sum of current value over positions
        realized_pnl: Sum of realized P&L
        unrealized_pnl: Sum of unrealized P&L
        total_pnl: Net P&L (realized + unrealized - unattributed fees - gas)
        total_fees: Trading fees plus estimated gas
        gas_fees: Estimated gas
        roi: Net P&L over traded volume, in percent
        position_count: Positions summarized
        open_position_count: Positions with a nonzero balance
    """

    snapshot_id: str = Field(default_factory=lambda: str(uuid4()))
    wallet_id: str | None = None
    taken_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    snapshot_type: SnapshotType = SnapshotType.ON_DEMAND
    total_value: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    unrealized_pnl: Decimal = ZERO
    total_pnl: Decimal = ZERO
    total_fees: Decimal = ZERO
    gas_fees: Decimal = ZERO
    roi: Decimal = ZERO
    position_count: int = 0
    open_position_count: int = 0

    model_config = ConfigDict(frozen=True)

    @field_validator("taken_at")
    @classmethod
    def validate_taken_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class AccountingConfig(BaseModel):
    """
    Accounting policy read by the engine at the time each event is applied.

    Changing it affects only events applied afterwards; lots already open
    keep the fees they were given, and closed lots are never revisited.

    Attributes:
        method: Lot matching method for sells
        include_fees: Whether buy fees enter cost basis
        fee_allocation: Attach buy fees to the lot or keep them separate
        oversell_policy: Reject oversells, or clamp to the open balance
        gas_price_estimate: Native-token cost per gas unit for gas_fees

    Example:
        >>> config = AccountingConfig(method=AccountingMethod.LIFO, include_fees=False)
    """

    method: AccountingMethod = AccountingMethod.FIFO
    include_fees: bool = True
    fee_allocation: FeeAllocation = FeeAllocation.PROPORTIONAL
    oversell_policy: OversellPolicy = OversellPolicy.REJECT
    gas_price_estimate: Decimal = DEFAULT_GAS_PRICE_ESTIMATE

    model_config = ConfigDict(frozen=True)

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("gas_price_estimate")
    @classmethod
    def validate_gas_price(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError(f"Gas price estimate cannot be negative, got {v}")
        return v

    @property
    def attributes_fees_to_lots(self) -> bool:
        return self.include_fees and self.fee_allocation is FeeAllocation.PROPORTIONAL

    @classmethod
    def from_yaml(cls, path: Path) -> "AccountingConfig":
        """Load configuration from the ``accounting`` section of a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data.get("accounting", {}))


# ============================================
# Inbound transaction events
# ============================================


class _TransactionEventBase(BaseModel):
    """Fields shared by every inbound transaction direction."""

    source_tx_id: str = Field(min_length=1)
    wallet_id: str = Field(min_length=1)
    token_address: str = Field(min_length=1)
    quantity: Decimal
    price: Decimal
    fees: Decimal = ZERO
    gas_used: int | None = Field(default=None, ge=0)
    timestamp: datetime

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("quantity", "price")
    @classmethod
    def validate_positive(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("fees")
    @classmethod
    def validate_fees(cls, v: Decimal) -> Decimal:
        if not v.is_finite() or v < 0:
            raise ValueError(f"cannot be negative, got {v}")
        return v

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def key(self) -> PositionKey:
        return PositionKey(wallet_id=self.wallet_id, token_address=self.token_address)

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType(self.direction)  # type: ignore[attr-defined]


class BuyEvent(_TransactionEventBase):
    direction: Literal["buy"] = "buy"


class SellEvent(_TransactionEventBase):
    direction: Literal["sell"] = "sell"


class LaunchEvent(_TransactionEventBase):
    direction: Literal["launch"] = "launch"


class FundingEvent(_TransactionEventBase):
    direction: Literal["funding"] = "funding"


class FeePaymentEvent(_TransactionEventBase):
    direction: Literal["fee_payment"] = "fee_payment"


TransactionEvent = Annotated[
    Union[BuyEvent, SellEvent, LaunchEvent, FundingEvent, FeePaymentEvent],
    Field(discriminator="direction"),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(TransactionEvent)

_DIRECTION_ALIASES = {"feePayment": "fee_payment", "fee-payment": "fee_payment"}


def parse_transaction_event(data: Any) -> "BuyEvent | SellEvent | LaunchEvent | FundingEvent | FeePaymentEvent":
    """
    Validate an inbound payload into one member of the transaction union.

    Accepts an already-parsed event (returned unchanged) or a mapping.

    Raises:
        InvalidEvent: Unknown direction, missing fields, non-positive
            quantity/price, negative fees
    """
    if isinstance(data, _TransactionEventBase):
        return data  # type: ignore[return-value]
    if not isinstance(data, dict):
        raise InvalidEvent(f"Transaction event must be a mapping, got {type(data).__name__}")

    payload = dict(data)
    direction = payload.get("direction")
    if isinstance(direction, str):
        payload["direction"] = _DIRECTION_ALIASES.get(direction, direction.lower())

    try:
        return _EVENT_ADAPTER.validate_python(payload)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise InvalidEvent(f"Invalid transaction event {payload.get('source_tx_id', '?')}: {errors}") from e
