"""Market data interfaces: validity cache, rate limiter, quote client and fetcher."""

from .cache import SymbolCache
from .client import QuoteClient, QuoteSource, parse_quote
from .fetcher import QuoteFetcher
from .limiter import RateLimiter
from .mock import MockQuoteSource

__all__ = [
    "MockQuoteSource",
    "QuoteClient",
    "QuoteFetcher",
    "QuoteSource",
    "RateLimiter",
    "SymbolCache",
    "parse_quote",
]
