"""QuoteFetcher — fans a symbol batch out over a quote source with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Sequence

from stockmarket.errors import ErrorKind, FetchStopped, QuoteFetchError
from stockmarket.marketdata.cache import SymbolCache
from stockmarket.marketdata.client import QuoteSource
from stockmarket.models import FetchFailure, FetchResult, FetchSuccess, normalize_symbol
from stockmarket.utils import log_event

logger = logging.getLogger(__name__)


class QuoteFetcher:
    """Fetches quotes for a batch, isolating every symbol's failure.

    Concurrency only hides latency; the source's rate limiter still decides
    when each request goes out.
    """

    def __init__(self, source: QuoteSource, cache: SymbolCache, *, concurrency: int = 4) -> None:
        self._source = source
        self._cache = cache
        self._concurrency = max(1, concurrency)

    def partition(self, symbols: Iterable[str]) -> tuple[list[str], list[str]]:
        """Split symbols into (to_fetch, known_invalid), preserving order."""
        to_fetch: list[str] = []
        skipped: list[str] = []
        for raw in symbols:
            symbol = normalize_symbol(raw)
            (skipped if self._cache.is_known_invalid(symbol) else to_fetch).append(symbol)
        return to_fetch, skipped

    async def fetch_all(
        self,
        symbols: Sequence[str],
        *,
        stop: asyncio.Event | None = None,
    ) -> list[FetchResult]:
        """Fetch every symbol that is not known-invalid.

        Results come back in request order. When ``stop`` is set, symbols that
        have not started are left out, including ones still queued on the rate
        limiter, and in-flight ones are allowed to finish.
        """
        to_fetch, skipped = self.partition(symbols)
        if skipped:
            logger.debug("[fetcher] skipping known-invalid symbols: %s", ", ".join(skipped))
        if not to_fetch:
            return []

        sem = asyncio.Semaphore(self._concurrency)
        slots: list[FetchResult | None] = [None] * len(to_fetch)

        async def _one(index: int, symbol: str) -> None:
            async with sem:
                if stop is not None and stop.is_set():
                    return
                slots[index] = await self._fetch_one(symbol, stop)

        await asyncio.gather(*[_one(i, s) for i, s in enumerate(to_fetch)])
        return [r for r in slots if r is not None]

    async def _fetch_one(self, symbol: str, stop: asyncio.Event | None) -> FetchResult | None:
        try:
            quote = await self._source.fetch(symbol, stop=stop)
        except FetchStopped:
            logger.debug("[fetcher] %s not started, stop requested", symbol)
            return None
        except QuoteFetchError as exc:
            if exc.kind is ErrorKind.NOT_FOUND:
                self._cache.record(symbol, valid=False)
            log_event(
                logger, logging.WARNING, "symbol_failed",
                "[fetcher] %s failed: %s",
                symbol, exc,
                symbol=symbol, kind=exc.kind.value, detail=exc.detail,
            )
            return FetchFailure(symbol=symbol, kind=exc.kind, detail=exc.detail)
        except Exception as exc:
            logger.exception("[fetcher] %s: unexpected error from quote source", symbol)
            return FetchFailure(symbol=symbol, kind=ErrorKind.NETWORK_ERROR, detail=f"{type(exc).__name__}: {exc}")

        self._cache.record(symbol, valid=True)
        return FetchSuccess(quote)
