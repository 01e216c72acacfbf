"""MockQuoteSource — simulates the quote API without network calls.

Prices random-walk from a per-symbol seed so repeated cycles show movement.
Symbols listed as unknown behave like a 404 from the real API.
"""

from __future__ import annotations

import asyncio
import logging
import random
from decimal import Decimal

from stockmarket.errors import ErrorKind, FetchStopped, QuoteFetchError
from stockmarket.models import Quote, normalize_symbol
from stockmarket.utils import utc_now

logger = logging.getLogger(__name__)

_BASE_PRICES = {
    "AAPL": 189.5,
    "MSFT": 415.2,
    "NVDA": 880.0,
    "AMZN": 178.3,
    "TSLA": 172.6,
    "SPY": 512.4,
}

_UNKNOWN = {"BADSYM", "INVALID"}


class MockQuoteSource:
    def __init__(self, *, unknown: set[str] | None = None, latency: float = 0.05, seed: int = 7) -> None:
        self._unknown = {normalize_symbol(s) for s in (unknown if unknown is not None else _UNKNOWN)}
        self._latency = latency
        self._rng = random.Random(seed)
        self._last: dict[str, float] = {}
        self.calls = 0

    async def fetch(self, symbol: str, *, stop: asyncio.Event | None = None) -> Quote:
        if stop is not None and stop.is_set():
            raise FetchStopped("stop requested")
        symbol = normalize_symbol(symbol)
        self.calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        if symbol in self._unknown:
            raise QuoteFetchError(ErrorKind.NOT_FOUND, f"unknown symbol {symbol}")

        previous = self._last.get(symbol) or _BASE_PRICES.get(symbol) or self._rng.uniform(10, 300)
        price = max(0.01, previous * (1 + self._rng.gauss(0, 0.01)))
        self._last[symbol] = price
        change = price - previous
        return Quote(
            symbol=symbol,
            price=Decimal(f"{price:.2f}"),
            change=Decimal(f"{change:.2f}"),
            change_percent=Decimal(f"{change / previous * 100:.4f}"),
            volume=self._rng.randint(100_000, 50_000_000),
            fetched_at=utc_now(),
        )
