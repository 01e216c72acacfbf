"""In-memory validity cache for symbols.

A symbol that the API reported as unknown is skipped until
``revalidate_interval`` has passed since it was last checked. Losing the cache
(process restart) is harmless: it only costs redundant validation calls.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from stockmarket.models import SymbolCacheEntry, normalize_symbol
from stockmarket.utils import utc_now

logger = logging.getLogger(__name__)


class SymbolCache:
    def __init__(
        self,
        revalidate_interval: timedelta = timedelta(hours=24),
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._revalidate_interval = revalidate_interval
        self._clock = clock
        self._entries: dict[str, SymbolCacheEntry] = {}

    def is_known_invalid(self, symbol: str) -> bool:
        entry = self._entries.get(normalize_symbol(symbol))
        if entry is None or entry.valid:
            return False
        return self._clock() - entry.last_checked_at < self._revalidate_interval

    def record(self, symbol: str, valid: bool, at: datetime | None = None) -> SymbolCacheEntry:
        key = normalize_symbol(symbol)
        when = at or self._clock()
        entry = self._entries.get(key)
        if entry is None:
            entry = SymbolCacheEntry(symbol=key, valid=valid, last_checked_at=when)
            self._entries[key] = entry
        else:
            if entry.valid != valid:
                logger.info("[symbol-cache] %s is now %s", key, "valid" if valid else "invalid")
            entry.valid = valid
            entry.last_checked_at = when
        return entry

    def get(self, symbol: str) -> SymbolCacheEntry | None:
        return self._entries.get(normalize_symbol(symbol))

    def __len__(self) -> int:
        return len(self._entries)
