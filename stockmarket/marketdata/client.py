"""Rate-limited quote API client with timeouts, bounded retry and backoff.

The endpoint is ``quote_url`` with ``{symbol}`` substituted. A successful
response is a JSON object with at least ``price``, ``change``,
``changePercent`` and ``volume``; anything else is a malformed response.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import quote as url_quote

import httpx

from stockmarket.config import Settings
from stockmarket.errors import ErrorKind, QuoteFetchError
from stockmarket.marketdata.limiter import RateLimiter
from stockmarket.models import Quote, normalize_symbol
from stockmarket.utils import backoff_delay, log_event, sleep_or_stop, utc_now

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("price", "change", "changePercent", "volume")
_MAX_RETRY_AFTER = 900.0


class QuoteSource(Protocol):
    """Anything that can turn a symbol into a :class:`Quote` or raise :class:`QuoteFetchError`."""

    async def fetch(self, symbol: str, *, stop: asyncio.Event | None = None) -> Quote: ...


class QuoteClient:
    """HTTP implementation of :class:`QuoteSource`."""

    def __init__(
        self,
        *,
        quote_url: str,
        limiter: RateLimiter,
        api_key: str = "",
        api_key_param: str = "apikey",
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_factor: float = 2.0,
        backoff_max: float = 5.0,
        backoff_jitter: float = 0.5,
        rate_limited_cooldown: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._quote_url = quote_url
        self._limiter = limiter
        self._api_key = api_key.strip()
        self._api_key_param = api_key_param
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff = {
            "base": backoff_base,
            "factor": backoff_factor,
            "cap": backoff_max,
            "jitter": backoff_jitter,
        }
        self._rate_limited_cooldown = rate_limited_cooldown
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self.requests_sent = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        limiter: RateLimiter,
        http_client: httpx.AsyncClient | None = None,
    ) -> QuoteClient:
        return cls(
            quote_url=settings.quote_url,
            limiter=limiter,
            api_key=settings.api_key,
            api_key_param=settings.api_key_param,
            timeout=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base_seconds,
            backoff_factor=settings.backoff_factor,
            backoff_max=settings.backoff_max_seconds,
            backoff_jitter=settings.backoff_jitter,
            rate_limited_cooldown=settings.rate_limited_cooldown_seconds,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def fetch(self, symbol: str, *, stop: asyncio.Event | None = None) -> Quote:
        """Fetch one quote, retrying timeouts and network errors with backoff.

        Once ``stop`` is set no new request goes out: a fetch still waiting for
        the limiter raises :class:`FetchStopped`, and a retrying one gives up
        with its last error.
        """
        symbol = normalize_symbol(symbol)
        retry = 0
        while True:
            try:
                return await self._fetch_once(symbol, stop)
            except QuoteFetchError as exc:
                if not exc.retryable or retry >= self._max_retries:
                    raise
                delay = backoff_delay(retry, rng=self._rng, **self._backoff)
                retry += 1
                log_event(
                    logger, logging.DEBUG, "fetch_retry",
                    "[quote-client] %s %s, retry %d/%d in %.2fs",
                    symbol, exc.kind.value, retry, self._max_retries, delay,
                    symbol=symbol, kind=exc.kind.value, retry=retry, delay=delay,
                )
                if await sleep_or_stop(self._sleep, delay, stop):
                    raise

    async def _fetch_once(self, symbol: str, stop: asyncio.Event | None) -> Quote:
        await self._limiter.acquire(stop=stop)
        url = self._quote_url.format(symbol=url_quote(symbol, safe=""))
        params = {self._api_key_param: self._api_key} if self._api_key else None
        self.requests_sent += 1
        try:
            resp = await self._http.get(url, params=params, timeout=self._timeout)
        except httpx.TimeoutException as exc:
            raise QuoteFetchError(ErrorKind.TIMEOUT, f"no response within {self._timeout}s") from exc
        except httpx.TransportError as exc:
            raise QuoteFetchError(ErrorKind.NETWORK_ERROR, f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            raise QuoteFetchError(ErrorKind.NOT_FOUND, f"unknown symbol {symbol}")
        if resp.status_code == 429:
            cooldown = max(self._rate_limited_cooldown, _retry_after(resp))
            self._limiter.cool_down(cooldown)
            log_event(
                logger, logging.WARNING, "rate_limit_cooldown",
                "[quote-client] rate limited on %s, pausing all requests for %.0fs",
                symbol, cooldown,
                symbol=symbol, cooldown=cooldown,
            )
            raise QuoteFetchError(ErrorKind.RATE_LIMITED, "HTTP 429")
        if resp.status_code >= 500:
            raise QuoteFetchError(ErrorKind.NETWORK_ERROR, f"HTTP {resp.status_code}")
        if resp.status_code != 200:
            # 401/403 and friends
            raise QuoteFetchError(ErrorKind.NETWORK_ERROR, f"HTTP {resp.status_code}", retryable=False)

        try:
            payload = resp.json()
        except ValueError as exc:
            logger.warning("[quote-client] %s: response body is not JSON", symbol)
            raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, "body is not JSON") from exc
        try:
            return parse_quote(symbol, payload, fetched_at=self._clock())
        except QuoteFetchError as exc:
            logger.warning("[quote-client] %s: %s", symbol, exc.detail)
            raise


def parse_quote(symbol: str, payload: Any, *, fetched_at: datetime) -> Quote:
    """Validate a decoded response body and build a :class:`Quote` from it."""
    if not isinstance(payload, dict):
        raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"expected object, got {type(payload).__name__}")
    missing = [f for f in _REQUIRED_FIELDS if payload.get(f) is None]
    if missing:
        raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"missing fields: {', '.join(missing)}")

    price = _to_decimal(payload["price"], "price")
    if price < 0:
        raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"negative price {price}")
    return Quote(
        symbol=symbol,
        price=price,
        change=_to_decimal(payload["change"], "change"),
        change_percent=_to_decimal(payload["changePercent"], "changePercent", percent=True),
        volume=_to_volume(payload["volume"]),
        fetched_at=fetched_at,
    )


def _to_decimal(value: Any, name: str, *, percent: bool = False) -> Decimal:
    if isinstance(value, bool):
        raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"{name} is not a number")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"{name} is not finite")
        return Decimal(repr(value))
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        text = value.strip()
        if percent and text.endswith("%"):
            text = text[:-1].strip()
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"{name} is not a number: {value!r}") from None
        if not result.is_finite():
            raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"{name} is not finite")
        return result
    raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"{name} has type {type(value).__name__}")


def _to_volume(value: Any) -> int:
    number = _to_decimal(value, "volume")
    if number != number.to_integral_value() or number < 0:
        raise QuoteFetchError(ErrorKind.MALFORMED_RESPONSE, f"volume must be a non-negative integer, got {value!r}")
    return int(number)


def _retry_after(resp: httpx.Response) -> float:
    """Retry-After in seconds, clamped to [0, _MAX_RETRY_AFTER]. HTTP-date values are ignored."""
    try:
        seconds = float(resp.headers.get("Retry-After", "0"))
    except ValueError:
        return 0.0
    if not math.isfinite(seconds):
        return 0.0
    return min(max(0.0, seconds), _MAX_RETRY_AFTER)
