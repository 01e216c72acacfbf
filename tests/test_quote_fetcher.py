from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from stockmarket.errors import ErrorKind, FetchStopped, QuoteFetchError
from stockmarket.marketdata import MockQuoteSource, QuoteClient, QuoteFetcher, RateLimiter, SymbolCache
from stockmarket.models import FetchFailure, FetchSuccess, Quote

_NOW = datetime(2026, 2, 16, 15, 0, tzinfo=timezone.utc)


def make_quote(symbol: str, price: str = "100.00") -> Quote:
    return Quote(
        symbol=symbol,
        price=Decimal(price),
        change=Decimal("1.00"),
        change_percent=Decimal("1.01"),
        volume=1_000,
        fetched_at=_NOW,
    )


class StubSource:
    """QuoteSource double: per-symbol outcome, call log and in-flight tracking."""

    def __init__(self, outcomes: dict | None = None, delay: float = 0.0) -> None:  # noqa: ANN001
        self.outcomes = outcomes or {}
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(self, symbol: str, *, stop: asyncio.Event | None = None) -> Quote:
        self.calls.append(symbol)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            outcome = self.outcomes.get(symbol)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome or make_quote(symbol)
        finally:
            self.in_flight -= 1


@pytest.mark.asyncio
async def test_results_follow_request_order_and_failures_are_isolated() -> None:
    source = StubSource(
        {
            "MSFT": QuoteFetchError(ErrorKind.TIMEOUT, "no response"),
            "TSLA": RuntimeError("source bug"),
        },
        delay=0.01,
    )
    fetcher = QuoteFetcher(source, SymbolCache(), concurrency=3)

    results = await fetcher.fetch_all(["AAPL", "MSFT", "TSLA", "NVDA"])

    assert [r.symbol for r in results] == ["AAPL", "MSFT", "TSLA", "NVDA"]
    assert isinstance(results[0], FetchSuccess)
    assert results[1] == FetchFailure("MSFT", ErrorKind.TIMEOUT, "no response")
    assert isinstance(results[2], FetchFailure)
    assert results[2].kind is ErrorKind.NETWORK_ERROR
    assert "source bug" in results[2].detail
    assert isinstance(results[3], FetchSuccess)


@pytest.mark.asyncio
async def test_cache_is_updated_only_by_validity_signals() -> None:
    cache = SymbolCache()
    source = StubSource(
        {
            "BADSYM": QuoteFetchError(ErrorKind.NOT_FOUND, "unknown symbol"),
            "SLOW": QuoteFetchError(ErrorKind.TIMEOUT),
            "JUNK": QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, "missing fields"),
        }
    )
    fetcher = QuoteFetcher(source, cache)

    await fetcher.fetch_all(["AAPL", "BADSYM", "SLOW", "JUNK"])

    assert cache.get("AAPL").valid is True
    assert cache.get("BADSYM").valid is False
    assert cache.get("SLOW") is None
    assert cache.get("JUNK") is None


@pytest.mark.asyncio
async def test_transient_failure_keeps_previous_cache_entry() -> None:
    cache = SymbolCache()
    cache.record("AAPL", valid=True)
    before = cache.get("AAPL").last_checked_at
    fetcher = QuoteFetcher(StubSource({"AAPL": QuoteFetchError(ErrorKind.RATE_LIMITED)}), cache)

    await fetcher.fetch_all(["AAPL"])

    assert cache.get("AAPL").valid is True
    assert cache.get("AAPL").last_checked_at == before


@pytest.mark.asyncio
async def test_known_invalid_symbols_are_not_fetched() -> None:
    cache = SymbolCache()
    cache.record("BADSYM", valid=False)
    source = StubSource()
    fetcher = QuoteFetcher(source, cache)

    to_fetch, skipped = fetcher.partition(["aapl", "badsym"])
    results = await fetcher.fetch_all(["AAPL", "BADSYM"])

    assert (to_fetch, skipped) == (["AAPL"], ["BADSYM"])
    assert source.calls == ["AAPL"]
    assert [r.symbol for r in results] == ["AAPL"]


@pytest.mark.asyncio
async def test_concurrency_is_bounded() -> None:
    source = StubSource(delay=0.02)
    fetcher = QuoteFetcher(source, SymbolCache(), concurrency=2)

    results = await fetcher.fetch_all([f"SYM{i}" for i in range(6)])

    assert len(results) == 6
    assert source.max_in_flight == 2


@pytest.mark.asyncio
async def test_stop_event_skips_symbols_not_yet_started() -> None:
    stop = asyncio.Event()

    class StoppingSource(StubSource):
        async def fetch(self, symbol: str, *, stop: asyncio.Event | None = None) -> Quote:
            stop.set()
            return await super().fetch(symbol, stop=stop)

    source = StoppingSource()
    fetcher = QuoteFetcher(source, SymbolCache(), concurrency=1)

    results = await fetcher.fetch_all(["AAPL", "MSFT", "NVDA"], stop=stop)

    assert source.calls == ["AAPL"]
    assert [r.symbol for r in results] == ["AAPL"]
    assert isinstance(results[0], FetchSuccess)


@pytest.mark.asyncio
async def test_empty_batch_returns_no_results() -> None:
    source = StubSource()
    assert await QuoteFetcher(source, SymbolCache()).fetch_all([]) == []
    assert source.calls == []


@pytest.mark.asyncio
async def test_symbols_queued_on_rate_limiter_are_not_sent_after_stop() -> None:
    stop = asyncio.Event()
    sent: list[str] = []
    now = [0.0]

    def handle(request: httpx.Request) -> httpx.Response:
        sent.append(request.url.path)
        return httpx.Response(200, json={"price": 10, "change": 0, "changePercent": 0, "volume": 1})

    async def sleep(seconds: float) -> None:
        # Shutdown arrives while the second request waits out the window.
        now[0] += seconds
        stop.set()
        await asyncio.sleep(0)

    limiter = RateLimiter(max_calls=1, period=60.0, clock=lambda: now[0], sleep=sleep)
    client = QuoteClient(
        quote_url="https://quotes.test/v1/quote/{symbol}",
        limiter=limiter,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handle)),
    )
    fetcher = QuoteFetcher(client, SymbolCache(), concurrency=4)

    results = await fetcher.fetch_all(["A", "B", "C", "D", "E", "F"], stop=stop)

    assert sent == ["/v1/quote/A"]
    assert [r.symbol for r in results] == ["A"]
    assert isinstance(results[0], FetchSuccess)


@pytest.mark.asyncio
async def test_mock_source_refuses_to_start_after_stop() -> None:
    stop = asyncio.Event()
    stop.set()
    source = MockQuoteSource(latency=0)

    with pytest.raises(FetchStopped):
        await source.fetch("AAPL", stop=stop)
    assert source.calls == 0
