"""Hierarchical state store primitives and their implementations.

Paths are dot-separated (``stockmarket.0.AAPL.price``). Every leaf has an
object (metadata, created once) and a state (value + ack flag + timestamp).
The reconciler only relies on the four :class:`StateStore` primitives.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Iterator, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from stockmarket.errors import StoreUnavailable

logger = logging.getLogger(__name__)


def join_path(*parts: str) -> str:
    return ".".join(p.strip(".") for p in parts if p)


def _child_ids(paths: Iterable[str], prefix: str) -> list[str]:
    """Distinct first segments below ``prefix`` that have leaves under them."""
    head = prefix.rstrip(".") + "."
    children = set()
    for path in paths:
        if not path.startswith(head):
            continue
        rest = path[len(head):]
        if "." in rest:
            children.add(rest.split(".", 1)[0])
    return sorted(children)


def _in_subtree(path: str, root: str) -> bool:
    return path == root or path.startswith(root + ".")


class StateStore(Protocol):
    async def ensure_leaf(self, path: str, metadata: dict[str, Any]) -> bool:
        """Create the leaf object if it does not exist. Returns True if created."""

    async def write_leaf(self, path: str, value: Any, ack: bool = True) -> None:
        """Set the leaf's value. Atomic per leaf."""

    async def delete_subtree(self, path: str) -> int:
        """Delete ``path`` and everything below it. Returns number of leaves removed."""

    async def list_subtrees(self, prefix: str) -> list[str]:
        """Ids of the subtrees directly below ``prefix``."""


@dataclass
class LeafState:
    val: Any
    ack: bool
    ts: int


# ── In-memory ─────────────────────────────────────────────────────────

class InMemoryStateStore:
    """Dict-backed store for tests and mock mode."""

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.states: dict[str, LeafState] = {}

    async def ensure_leaf(self, path: str, metadata: dict[str, Any]) -> bool:
        if path in self.objects:
            return False
        self.objects[path] = dict(metadata)
        return True

    async def write_leaf(self, path: str, value: Any, ack: bool = True) -> None:
        self.states[path] = LeafState(val=value, ack=ack, ts=int(time.time() * 1000))

    async def delete_subtree(self, path: str) -> int:
        doomed = [p for p in self.objects if _in_subtree(p, path)]
        for p in doomed:
            del self.objects[p]
        for p in [p for p in self.states if _in_subtree(p, path)]:
            del self.states[p]
        return len(doomed)

    async def list_subtrees(self, prefix: str) -> list[str]:
        return _child_ids(list(self.objects), prefix)

    def read_leaf(self, path: str) -> Any:
        state = self.states.get(path)
        return state.val if state is not None else None


# ── Redis ─────────────────────────────────────────────────────────────

def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


@contextmanager
def _store_errors(op: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailable(f"{op} failed: {exc}") from exc


class RedisStateStore:
    """Keeps objects and states in two Redis hashes keyed by leaf path."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        redis_client: aioredis.Redis | None = None,
        key_prefix: str = "stockmarket",
    ) -> None:
        if redis_client is None and redis_url is None:
            raise ValueError("redis_url or redis_client is required")
        self._redis = redis_client or aioredis.from_url(redis_url, decode_responses=True)
        self._objects_key = f"{key_prefix}:objects"
        self._states_key = f"{key_prefix}:states"

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except RedisError:
            logger.debug("[state-store] error closing redis connection", exc_info=True)

    async def ensure_leaf(self, path: str, metadata: dict[str, Any]) -> bool:
        with _store_errors(f"ensure_leaf({path})"):
            created = await self._redis.hsetnx(self._objects_key, path, json.dumps(metadata, default=_json_default))
        return bool(created)

    async def write_leaf(self, path: str, value: Any, ack: bool = True) -> None:
        state = {"val": value, "ack": ack, "ts": int(time.time() * 1000)}
        with _store_errors(f"write_leaf({path})"):
            await self._redis.hset(self._states_key, path, json.dumps(state, default=_json_default))

    async def delete_subtree(self, path: str) -> int:
        with _store_errors(f"delete_subtree({path})"):
            objects = [p for p in await self._redis.hkeys(self._objects_key) if _in_subtree(p, path)]
            states = [p for p in await self._redis.hkeys(self._states_key) if _in_subtree(p, path)]
            pipe = self._redis.pipeline()
            if objects:
                pipe.hdel(self._objects_key, *objects)
            if states:
                pipe.hdel(self._states_key, *states)
            await pipe.execute()
        return len(objects)

    async def list_subtrees(self, prefix: str) -> list[str]:
        with _store_errors(f"list_subtrees({prefix})"):
            paths = await self._redis.hkeys(self._objects_key)
        return _child_ids(paths, prefix)

    async def dump(self, prefix: str = "") -> dict[str, dict[str, Any]]:
        with _store_errors("dump"):
            raw = await self._redis.hgetall(self._states_key)
        return {
            path: json.loads(value)
            for path, value in sorted(raw.items())
            if not prefix or _in_subtree(path, prefix)
        }
