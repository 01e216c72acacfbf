"""CycleOrchestrator — drives one polling cycle and the scheduler loop around it.

A cycle: load symbols → skip known-invalid → fetch → reconcile → summary.
Cycles never overlap; a trigger that arrives while one is running is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

from stockmarket.errors import ConfigInvalid, StoreUnavailable
from stockmarket.marketdata.fetcher import QuoteFetcher
from stockmarket.models import CycleState, CycleSummary, FetchFailure, normalize_symbol
from stockmarket.state.reconciler import StateReconciler
from stockmarket.utils import log_event, utc_now

logger = logging.getLogger(__name__)


class CycleOrchestrator:
    """Owns the cycle lifetime, the single-flight guard and the shutdown signal.

    ``symbol_source`` is the configuration collaborator; it is called at the
    start of every cycle so symbol changes apply without a restart.
    ``on_close`` callables release owned resources (HTTP client, Redis).
    """

    def __init__(
        self,
        fetcher: QuoteFetcher,
        reconciler: StateReconciler,
        *,
        symbol_source: Callable[[], Sequence[str]],
        on_close: Sequence[Callable[[], Awaitable[Any]]] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._fetcher = fetcher
        self._reconciler = reconciler
        self._symbol_source = symbol_source
        self._on_close = list(on_close)
        self._clock = clock
        self._guard = asyncio.Lock()
        self._stop = asyncio.Event()
        self._state = CycleState.IDLE
        self.cycles = 0
        self.cycles_aborted = 0
        self.triggers_dropped = 0
        self.last_summary: CycleSummary | None = None

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    # ── configuration ─────────────────────────────────────────────────

    def _load_symbols(self) -> list[str]:
        try:
            raw = self._symbol_source()
        except ConfigInvalid:
            raise
        except Exception as exc:
            raise ConfigInvalid(f"could not load symbols: {exc}") from exc
        if not isinstance(raw, (list, tuple)):
            raise ConfigInvalid(f"symbol list must be a sequence of strings, got {type(raw).__name__}")
        return list(dict.fromkeys(normalize_symbol(s) for s in raw))

    # ── one cycle ─────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleSummary | None:
        """Run one cycle. Returns ``None`` if a cycle is already running.

        Raises :class:`ConfigInvalid` before anything is fetched if the symbol
        list is unusable. A store outage ends the cycle as ``ABORTED`` but
        still returns its summary.
        """
        if self._guard.locked():
            self.triggers_dropped += 1
            log_event(
                logger, logging.WARNING, "cycle_dropped",
                "[orchestrator] cycle already running, trigger dropped (%d so far)",
                self.triggers_dropped,
                dropped=self.triggers_dropped,
            )
            return None

        async with self._guard:
            symbols = self._load_symbols()
            self._state = CycleState.RUNNING
            self.cycles += 1
            summary = CycleSummary(requested=len(symbols), started_at=self._clock(), state=CycleState.RUNNING)
            log_event(
                logger, logging.INFO, "cycle_start",
                "[orchestrator] cycle=%d starting with %d symbol(s)",
                self.cycles, len(symbols),
                cycle=self.cycles, symbols=symbols,
            )
            try:
                to_fetch, skipped = self._fetcher.partition(symbols)
                summary.skipped_invalid = len(skipped)

                results = await self._fetcher.fetch_all(to_fetch, stop=self._stop)
                summary.interrupted = len(results) < len(to_fetch)
                failures = [r for r in results if isinstance(r, FetchFailure)]
                summary.failed = len(failures)
                summary.succeeded = len(results) - len(failures)
                summary.failures = dict(Counter(f.kind.value for f in failures))

                try:
                    await self._reconciler.reconcile(results)
                except StoreUnavailable as exc:
                    self.cycles_aborted += 1
                    summary.state = CycleState.ABORTED
                    log_event(
                        logger, logging.ERROR, "cycle_aborted",
                        "[orchestrator] cycle=%d aborted: state store unavailable: %s",
                        self.cycles, exc,
                        cycle=self.cycles, error=str(exc),
                    )
                else:
                    summary.state = CycleState.IDLE
            finally:
                self._state = CycleState.ABORTED if summary.aborted else CycleState.IDLE

            summary.ended_at = self._clock()
            self.last_summary = summary
            log_event(
                logger, logging.INFO, "cycle_end",
                "[orchestrator] cycle=%d done: requested=%d succeeded=%d failed=%d skipped=%d%s",
                self.cycles, summary.requested, summary.succeeded, summary.failed,
                summary.skipped_invalid, " (interrupted)" if summary.interrupted else "",
                **summary.to_dict(),
            )
            return summary

    # ── lifecycle ─────────────────────────────────────────────────────

    async def cleanup(self) -> list[str]:
        """Remove state subtrees of symbols that are no longer configured."""
        return await self._reconciler.remove_unconfigured(self._load_symbols())

    async def start(self) -> None:
        """Startup hook: drop subtrees left behind by removed symbols."""
        removed = await self.cleanup()
        logger.info("[orchestrator] started (%d stale subtree(s) removed)", len(removed))

    def request_stop(self) -> None:
        """Stop scheduling cycles; a running cycle finishes its in-flight fetches."""
        if not self._stop.is_set():
            logger.info("[orchestrator] stop requested")
        self._stop.set()

    async def run(self, interval: float) -> None:
        """Scheduler loop: run a cycle, sleep ``interval`` seconds, repeat until stopped."""
        logger.info("[orchestrator] starting scheduler (interval=%ss)", interval)
        while not self._stop.is_set():
            try:
                await self.run_cycle()
            except ConfigInvalid as exc:
                logger.error("[orchestrator] cycle not started, configuration invalid: %s", exc)
            except Exception:
                logger.error("[orchestrator] fatal cycle error", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("[orchestrator] scheduler stopped after %d cycle(s)", self.cycles)

    async def close(self) -> None:
        """Teardown hook: release owned resources."""
        for closer in self._on_close:
            try:
                await closer()
            except Exception:
                logger.warning("[orchestrator] error while closing resources", exc_info=True)

    # ── stats ─────────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "cycles": self.cycles,
            "cycles_aborted": self.cycles_aborted,
            "triggers_dropped": self.triggers_dropped,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
        }
