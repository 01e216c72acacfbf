"""StateReconciler — the only writer of per-symbol subtrees in the state store.

Layout per symbol::

    <namespace>.<SYMBOL_ID>.price          number
    <namespace>.<SYMBOL_ID>.change         number
    <namespace>.<SYMBOL_ID>.changePercent  number (%)
    <namespace>.<SYMBOL_ID>.volume         number
    <namespace>.<SYMBOL_ID>.lastUpdate     string (ISO-8601 UTC)
    <namespace>.<SYMBOL_ID>.lastError      string, "" after a successful fetch

A failed fetch never touches the quote leaves, so the last known good values
stay readable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from stockmarket.models import FetchFailure, FetchResult, FetchSuccess, Quote, state_id
from stockmarket.state.store import StateStore, join_path
from stockmarket.utils import log_event

logger = logging.getLogger(__name__)

QUOTE_LEAVES: dict[str, dict[str, Any]] = {
    "price": {"type": "number", "role": "value.price"},
    "change": {"type": "number", "role": "value"},
    "changePercent": {"type": "number", "role": "value", "unit": "%"},
    "volume": {"type": "number", "role": "value"},
    "lastUpdate": {"type": "string", "role": "date"},
}
ERROR_LEAF = "lastError"
_ERROR_LEAF_META = {"type": "string", "role": "text"}


@dataclass
class ReconcileOutcome:
    succeeded: int = 0
    failed: int = 0


class StateReconciler:
    def __init__(self, store: StateStore, namespace: str) -> None:
        self._store = store
        self._namespace = namespace

    def leaf_path(self, symbol: str, leaf: str) -> str:
        return join_path(self._namespace, state_id(symbol), leaf)

    async def reconcile(self, results: Iterable[FetchResult]) -> ReconcileOutcome:
        """Apply a cycle's fetch results. ``StoreUnavailable`` propagates."""
        outcome = ReconcileOutcome()
        for result in results:
            if isinstance(result, FetchSuccess):
                await self._apply_quote(result.quote)
                outcome.succeeded += 1
            elif isinstance(result, FetchFailure):
                await self._apply_failure(result)
                outcome.failed += 1
        return outcome

    async def _apply_quote(self, quote: Quote) -> None:
        values = {
            "price": quote.price,
            "change": quote.change,
            "changePercent": quote.change_percent,
            "volume": quote.volume,
            "lastUpdate": quote.fetched_at.isoformat(),
        }
        for leaf, value in values.items():
            path = self.leaf_path(quote.symbol, leaf)
            await self._ensure(path, quote.symbol, leaf, QUOTE_LEAVES[leaf])
            await self._store.write_leaf(path, value, True)
        await self._write_error(quote.symbol, "")

    async def _apply_failure(self, failure: FetchFailure) -> None:
        message = failure.kind.value
        if failure.detail:
            message = f"{message}: {failure.detail}"
        await self._write_error(failure.symbol, message)

    async def _write_error(self, symbol: str, message: str) -> None:
        path = self.leaf_path(symbol, ERROR_LEAF)
        await self._ensure(path, symbol, ERROR_LEAF, _ERROR_LEAF_META)
        await self._store.write_leaf(path, message, True)

    async def _ensure(self, path: str, symbol: str, leaf: str, common: dict[str, Any]) -> None:
        metadata = {"name": f"{symbol} {leaf}", "read": True, "write": False, **common}
        if await self._store.ensure_leaf(path, metadata):
            logger.debug("[reconciler] created %s", path)

    async def remove_unconfigured(self, symbols: Iterable[str]) -> list[str]:
        """Delete subtrees of symbols that are no longer configured. Not part of a cycle."""
        keep = {state_id(s) for s in symbols}
        removed: list[str] = []
        for child in await self._store.list_subtrees(self._namespace):
            if child in keep:
                continue
            root = join_path(self._namespace, child)
            await self._store.delete_subtree(root)
            removed.append(child)
        if removed:
            log_event(
                logger, logging.INFO, "cleanup_removed",
                "[reconciler] removed %d unconfigured subtree(s): %s",
                len(removed), ", ".join(removed),
                removed=removed,
            )
        return removed
