"""Price book: last observed price per token with fallback resolution."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from lotbook.services.ledger.errors import PriceUnavailable
from lotbook.services.ledger.models import PriceObservation, ensure_utc
from lotbook.services.market_data.interface import IPriceSource, PriceQuote
from lotbook.system import LoggerFactory

logger = LoggerFactory.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PriceBook:
    """
    Shared price state read by every position key.

    Entries are plain dict assignments written by price ticks and by
    successful source lookups, and read without locking; a reader may see a
    slightly older observation, which only affects valuation freshness.

    Resolution order for a token:
    1. Fresh quote from the price source (if one is configured)
    2. Last observation in the book (stale if the source failed or it is too old)
    3. Caller's fallback price, typically the transaction price (stale)

    Args:
        source: Optional market data source
        max_price_age: Observations older than this are marked stale
        clock: Returns current UTC time
    """

    def __init__(
        self,
        source: IPriceSource | None = None,
        max_price_age: timedelta | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.source = source
        self.max_price_age = max_price_age
        self._clock = clock
        self._last: dict[str, PriceQuote] = {}

    def update(self, token_address: str, price: Decimal, as_of: datetime | None = None) -> PriceQuote:
        """Record a price observation pushed by a price feed."""
        quote = PriceQuote(token_address=token_address, price=price, as_of=as_of or self._clock())
        self._last[token_address] = quote
        return quote

    def last_known(self, token_address: str) -> PriceQuote | None:
        return self._last.get(token_address)

    def tokens(self) -> list[str]:
        return list(self._last)

    def resolve(
        self,
        token_address: str,
        fallback_price: Decimal | None = None,
        fallback_as_of: datetime | None = None,
    ) -> PriceObservation:
        """
        Resolve the price used to value a token.

        Args:
            token_address: Token to price
            fallback_price: Used (marked stale) when nothing better is known
            fallback_as_of: Time of the fallback price

        Returns:
            PriceObservation with provenance and staleness

        Raises:
            PriceUnavailable: No source quote, no book entry and no fallback
        """
        source_failed = False
        if self.source is not None:
            try:
                quote = self.source.get_price(token_address)
            except PriceUnavailable as e:
                logger.debug("price_book.source_unavailable", token_address=token_address, reason=str(e))
                quote = None
            if quote is not None:
                self._last[token_address] = quote
                return PriceObservation(
                    price=quote.price, as_of=quote.as_of, stale=self.is_stale(quote.as_of), source="market"
                )
            source_failed = True

        last = self._last.get(token_address)
        if last is not None:
            return PriceObservation(
                price=last.price,
                as_of=last.as_of,
                stale=source_failed or self.is_stale(last.as_of),
                source="last_known" if source_failed else "market",
            )

        if fallback_price is not None:
            return PriceObservation(
                price=fallback_price,
                as_of=ensure_utc(fallback_as_of) if fallback_as_of else None,
                stale=True,
                source="transaction",
            )

        raise PriceUnavailable(token_address, "no quote, no last known price, no fallback")

    def is_stale(self, as_of: datetime | None) -> bool:
        """True when an observation at as_of is older than max_price_age."""
        if self.max_price_age is None or as_of is None:
            return False
        return self._clock() - as_of > self.max_price_age
