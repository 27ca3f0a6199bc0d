"""Market data contract and price book used to value open positions."""

from lotbook.services.market_data.interface import IPriceSource, PriceQuote, StaticPriceSource
from lotbook.services.market_data.price_book import PriceBook

__all__ = [
    "IPriceSource",
    "PriceQuote",
    "StaticPriceSource",
    "PriceBook",
]
