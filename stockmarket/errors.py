"""Error taxonomy shared by the fetch, reconcile and orchestration layers."""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    CONFIG_INVALID = "CONFIG_INVALID"

    @property
    def retryable(self) -> bool:
        """Transient kinds that the API client retries with backoff."""
        return self in (ErrorKind.TIMEOUT, ErrorKind.NETWORK_ERROR)


class StockMarketError(Exception):
    """Base class for every error raised by this package."""

    kind: ErrorKind


class QuoteFetchError(StockMarketError):
    """A single symbol could not be fetched. Never fatal for a cycle."""

    def __init__(self, kind: ErrorKind, detail: str = "", *, retryable: bool | None = None) -> None:
        self.kind = kind
        self.detail = detail
        self.retryable = kind.retryable if retryable is None else retryable
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class StoreUnavailable(StockMarketError):
    """The persistent state store rejected or dropped a request."""

    kind = ErrorKind.STORE_UNAVAILABLE


class ConfigInvalid(StockMarketError):
    """Configuration cannot be used; raised before any fetch happens."""

    kind = ErrorKind.CONFIG_INVALID


class FetchStopped(StockMarketError):
    """Shutdown was requested before the request went out; the symbol has no result."""
