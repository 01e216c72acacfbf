"""Plain data types passed between the cache, fetcher, reconciler and orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Union

from stockmarket.errors import ConfigInvalid, ErrorKind


def normalize_symbol(raw: str) -> str:
    """Strip and upper-case a configured symbol. Empty symbols are a config error."""
    if not isinstance(raw, str):
        raise ConfigInvalid(f"symbol must be a string, got {type(raw).__name__}")
    symbol = raw.strip().upper()
    if not symbol:
        raise ConfigInvalid("empty symbol in configuration")
    return symbol


def state_id(symbol: str) -> str:
    """Id of a symbol's subtree. ``.`` separates path segments, so it is replaced."""
    return normalize_symbol(symbol).replace(".", "_")


@dataclass
class SymbolCacheEntry:
    symbol: str
    valid: bool
    last_checked_at: datetime


@dataclass(frozen=True)
class Quote:
    symbol: str
    price: Decimal
    change: Decimal
    change_percent: Decimal
    volume: int
    fetched_at: datetime

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"negative price for {self.symbol}: {self.price}")
        if self.volume < 0:
            raise ValueError(f"negative volume for {self.symbol}: {self.volume}")


@dataclass(frozen=True)
class FetchSuccess:
    quote: Quote

    ok = True

    @property
    def symbol(self) -> str:
        return self.quote.symbol


@dataclass(frozen=True)
class FetchFailure:
    symbol: str
    kind: ErrorKind
    detail: str = ""

    ok = False


FetchResult = Union[FetchSuccess, FetchFailure]


class CycleState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    ABORTED = "aborted"


@dataclass
class CycleSummary:
    requested: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_invalid: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    state: CycleState = CycleState.IDLE
    interrupted: bool = False
    failures: dict[str, int] = field(default_factory=dict)

    @property
    def aborted(self) -> bool:
        return self.state is CycleState.ABORTED

    @property
    def elapsed_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped_invalid": self.skipped_invalid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "state": self.state.value,
            "interrupted": self.interrupted,
            "failures": dict(self.failures),
        }
