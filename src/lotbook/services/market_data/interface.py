"""Market data contract consumed by the ledger."""

from datetime import datetime
from decimal import Decimal
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, field_validator

from lotbook.services.ledger.models import ensure_utc


class PriceQuote(BaseModel):
    """Latest price for a token as reported by a market data source."""

    token_address: str
    price: Decimal
    as_of: datetime

    model_config = ConfigDict(frozen=True)

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError(f"Price must be positive, got {v}")
        return v

    @field_validator("as_of")
    @classmethod
    def validate_as_of(cls, v: datetime) -> datetime:
        return ensure_utc(v)


@runtime_checkable
class IPriceSource(Protocol):
    """
    Price lookup used to value open positions.

    Implementations may return None or raise PriceUnavailable when no price
    is known; the ledger then falls back to the last known price or the
    transaction's own price and marks the valuation stale.
    """

    def get_price(self, token_address: str) -> PriceQuote | None:
        """
        Get the latest price for a token.

        Args:
            token_address: Token to price

        Returns:
            PriceQuote, or None if unavailable

        Raises:
            PriceUnavailable: Source failed to produce a price
        """
        ...


class StaticPriceSource:
    """
    Dictionary-backed price source.

    Useful for replays and tests where prices are known up front.

    Example:
        >>> source = StaticPriceSource()
        >>> source.set_price("0xtoken", Decimal("1.25"), datetime.now(timezone.utc))
        >>> source.get_price("0xtoken").price
        Decimal('1.25')
    """

    def __init__(self, quotes: dict[str, PriceQuote] | None = None) -> None:
        self._quotes: dict[str, PriceQuote] = dict(quotes or {})

    def set_price(self, token_address: str, price: Decimal, as_of: datetime) -> PriceQuote:
        quote = PriceQuote(token_address=token_address, price=price, as_of=as_of)
        self._quotes[token_address] = quote
        return quote

    def remove(self, token_address: str) -> None:
        self._quotes.pop(token_address, None)

    def get_price(self, token_address: str) -> PriceQuote | None:
        return self._quotes.get(token_address)
