"""Shared outbound request throttle."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable

from stockmarket.errors import FetchStopped
from stockmarket.utils import sleep_or_stop

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window token bucket for async code, shared by all symbols.

    At most ``max_calls`` acquisitions happen in any window of ``period``
    seconds, consecutive acquisitions are at least ``min_interval`` apart, and
    :meth:`cool_down` blocks every caller until the cool-down has passed.

    Usage::

        limiter = RateLimiter(max_calls=5, period=60)
        async with limiter:
            await do_api_call()
    """

    def __init__(
        self,
        max_calls: int,
        period: float = 60.0,
        *,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        self._max_calls = max_calls
        self._period = period
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._blocked_until = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self, *, stop: asyncio.Event | None = None) -> float:
        """Wait for a slot and return the timestamp the request was dispatched at.

        Raises :class:`FetchStopped` instead of taking a slot once ``stop`` is set.
        """
        async with self._lock:
            while True:
                if stop is not None and stop.is_set():
                    raise FetchStopped("stop requested while waiting for a request slot")
                wait = self._wait_time(self._clock())
                if wait <= 0:
                    break
                await sleep_or_stop(self._sleep, wait, stop)
            now = self._clock()
            self._calls.append(now)
            return now

    def _wait_time(self, now: float) -> float:
        while self._calls and now - self._calls[0] >= self._period:
            self._calls.popleft()
        wait = self._blocked_until - now
        if len(self._calls) >= self._max_calls:
            wait = max(wait, self._period - (now - self._calls[0]))
        if self._calls and self._min_interval > 0:
            wait = max(wait, self._min_interval - (now - self._calls[-1]))
        return wait

    def cool_down(self, seconds: float) -> None:
        """Block all further requests for ``seconds``. Never shortens an active cool-down."""
        until = self._clock() + seconds
        if until > self._blocked_until:
            self._blocked_until = until
            logger.debug("[rate-limit] cooling down for %.1fs", seconds)

    @property
    def cooling_down(self) -> bool:
        return self._blocked_until > self._clock()

    async def __aenter__(self) -> RateLimiter:
        await self.acquire()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        return None
