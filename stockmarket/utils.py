"""Shared utilities: logging, backoff schedule, time helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import random
import sys
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable


# ── Structured JSON logging ───────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line.

    Structured events are attached with ``extra={"event": ..., "fields": {...}}``
    and come out as top-level ``event`` / ``fields`` keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            payload["event"] = event
        fields = getattr(record, "fields", None)
        if fields:
            payload["fields"] = fields
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure root logger with structured JSON output to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JSONFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    msg: str,
    *args: Any,
    **fields: Any,
) -> None:
    """Log ``msg`` and tag the record with a structured ``event`` name and fields."""
    logger.log(level, msg, *args, extra={"event": event, "fields": fields})


# ── Exponential backoff ───────────────────────────────────────────────

def backoff_delay(
    retry: int,
    *,
    base: float = 0.5,
    factor: float = 2.0,
    cap: float = 5.0,
    jitter: float = 0.5,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry number ``retry`` (0-based).

    The capped exponential delay is scaled down by up to ``jitter`` so that
    concurrent retries against a shared limit spread out. ``jitter=0`` gives
    the exact schedule 0.5, 1, 2, 4, 5, 5, ...
    """
    delay = min(cap, base * (factor ** retry))
    if jitter <= 0 or delay <= 0:
        return delay
    r = rng or random
    return r.uniform(delay * (1.0 - jitter), delay)


async def sleep_or_stop(
    sleep: Callable[[float], Awaitable[Any]],
    delay: float,
    stop: asyncio.Event | None,
) -> bool:
    """Sleep for ``delay`` seconds, waking early once ``stop`` is set.

    Returns True if ``stop`` is set when the sleep ends.
    """
    if stop is None:
        await sleep(delay)
        return False
    if stop.is_set():
        return True
    sleeper = asyncio.ensure_future(sleep(delay))
    waiter = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        sleeper.cancel()
        waiter.cancel()
    return stop.is_set()


# ── Timestamp helpers ─────────────────────────────────────────────────

def utc_now() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)
