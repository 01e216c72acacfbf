"""stockmarket — CLI entrypoint and process lifecycle.

Poll quotes for the configured symbols into the state store::

    python -m stockmarket.main                # scheduler loop (default)
    python -m stockmarket.main --once         # single cycle, then exit
    python -m stockmarket.main --mock --once  # no network, in-memory store
    python -m stockmarket.main --cleanup      # only drop removed symbols' state
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import timedelta
from typing import Callable, Sequence

from stockmarket import __version__
from stockmarket.config import Settings, get_settings, load_settings
from stockmarket.errors import ConfigInvalid, StoreUnavailable
from stockmarket.marketdata import MockQuoteSource, QuoteClient, QuoteFetcher, RateLimiter, SymbolCache
from stockmarket.orchestrator import CycleOrchestrator
from stockmarket.state import InMemoryStateStore, RedisStateStore, StateReconciler
from stockmarket.utils import setup_logging

logger = logging.getLogger("stockmarket")

_MOCK_SYMBOLS = ("AAPL", "BADSYM", "MSFT")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stockmarket",
        description="stockmarket — scheduled quote sync into a hierarchical state store",
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle then exit")
    parser.add_argument("--mock", action="store_true", help="Enable mock mode (no API calls, in-memory store)")
    parser.add_argument("--cleanup", action="store_true", help="Only remove state of unconfigured symbols")
    parser.add_argument("--interval", type=int, default=None, help="Override poll interval in seconds")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_orchestrator(
    settings: Settings,
    *,
    mock: bool = False,
    symbol_source: Callable[[], Sequence[str]] | None = None,
) -> CycleOrchestrator:
    """Wire the process-scoped components together from settings."""
    limiter = RateLimiter(
        max_calls=settings.rate_limit_calls,
        period=settings.rate_limit_period_seconds,
        min_interval=settings.min_request_interval_seconds,
    )
    cache = SymbolCache(timedelta(seconds=settings.revalidate_interval_seconds))
    on_close = []

    if mock:
        source = MockQuoteSource()
        store = InMemoryStateStore()
    else:
        client = QuoteClient.from_settings(settings, limiter)
        redis_store = RedisStateStore(settings.redis_url)
        on_close.extend([client.aclose, redis_store.close])
        source, store = client, redis_store

    fetcher = QuoteFetcher(source, cache, concurrency=settings.fetch_concurrency)
    reconciler = StateReconciler(store, settings.state_namespace)
    return CycleOrchestrator(
        fetcher,
        reconciler,
        symbol_source=symbol_source or (lambda: settings.symbols),
        on_close=on_close,
    )


def _reload_symbols() -> list[str]:
    # Re-read env/.env each cycle so symbol changes apply without a restart.
    return load_settings().symbols


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    mock = args.mock or settings.mock_mode
    orchestrator = build_orchestrator(
        settings,
        mock=mock,
        symbol_source=(lambda: settings.symbols or list(_MOCK_SYMBOLS)) if mock else _reload_symbols,
    )

    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        if args.cleanup:
            removed = await orchestrator.cleanup()
            logger.info("Cleanup removed %d subtree(s)", len(removed))
            return 0

        await orchestrator.start()
        if args.once:
            summary = await orchestrator.run_cycle()
            if summary is not None:
                print(json.dumps(summary.to_dict(), indent=2))
            return 1 if summary is None or summary.aborted else 0

        await orchestrator.run(args.interval or settings.poll_interval_seconds)
        return 0
    except ConfigInvalid as exc:
        logger.error("Configuration invalid: %s", exc)
        return 2
    except StoreUnavailable as exc:
        logger.error("State store unavailable: %s", exc)
        return 3
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
        await orchestrator.close()


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ConfigInvalid as exc:
        setup_logging()
        logger.error("Configuration invalid: %s", exc)
        sys.exit(2)
    setup_logging(settings.log_level)
    logger.info("stockmarket v%s starting", __version__)

    try:
        code = asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
