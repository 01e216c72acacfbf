"""Persistent state tree: store primitives and the reconciler that writes them."""

from stockmarket.state.reconciler import ReconcileOutcome, StateReconciler
from stockmarket.state.store import InMemoryStateStore, RedisStateStore, StateStore

__all__ = [
    "InMemoryStateStore",
    "ReconcileOutcome",
    "RedisStateStore",
    "StateReconciler",
    "StateStore",
]
