from __future__ import annotations

import json
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from stockmarket.errors import StoreUnavailable
from stockmarket.state import RedisStateStore


class FakePipeline:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple]] = []

    def hdel(self, key: str, *fields: str) -> None:
        self._ops.append(("hdel", (key, *fields)))

    async def execute(self) -> list:
        out = []
        for name, args in self._ops:
            out.append(await getattr(self._redis, name)(*args))
        return out


class FakeRedis:
    """Just enough of redis.asyncio's hash API for the state store."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.closed = False

    async def hsetnx(self, key: str, field: str, value: str) -> int:
        h = self.hashes.setdefault(key, {})
        if field in h:
            return 0
        h[field] = value
        return 1

    async def hset(self, key: str, field: str, value: str) -> int:
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hkeys(self, key: str) -> list[str]:
        return list(self.hashes.get(key, {}))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key: str, *fields: str) -> int:
        h = self.hashes.get(key, {})
        return sum(1 for f in fields if h.pop(f, None) is not None)

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class DownRedis(FakeRedis):
    async def hset(self, key: str, field: str, value: str) -> int:
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def hkeys(self, key: str) -> list[str]:
        raise RedisConnectionError("Connection refused.")


@pytest.mark.asyncio
async def test_ensure_leaf_is_create_if_absent() -> None:
    fake = FakeRedis()
    store = RedisStateStore(redis_client=fake)

    assert await store.ensure_leaf("ns.AAPL.price", {"name": "AAPL price", "type": "number"}) is True
    assert await store.ensure_leaf("ns.AAPL.price", {"name": "changed"}) is False
    assert json.loads(fake.hashes["stockmarket:objects"]["ns.AAPL.price"])["name"] == "AAPL price"


@pytest.mark.asyncio
async def test_write_leaf_serializes_value_ack_and_timestamp() -> None:
    fake = FakeRedis()
    store = RedisStateStore(redis_client=fake, key_prefix="sm")

    await store.write_leaf("ns.AAPL.price", Decimal("189.50"), True)

    state = json.loads(fake.hashes["sm:states"]["ns.AAPL.price"])
    assert state["val"] == 189.5
    assert state["ack"] is True
    assert isinstance(state["ts"], int)
    dumped = await store.dump("ns")
    assert dumped["ns.AAPL.price"]["val"] == 189.5


@pytest.mark.asyncio
async def test_list_and_delete_subtrees() -> None:
    store = RedisStateStore(redis_client=FakeRedis())
    for path in ("ns.AAPL.price", "ns.AAPL.volume", "ns.MSFT.price", "ns.info", "other.X.price"):
        await store.ensure_leaf(path, {})
        await store.write_leaf(path, 1)

    assert await store.list_subtrees("ns") == ["AAPL", "MSFT"]

    assert await store.delete_subtree("ns.AAPL") == 2
    assert await store.list_subtrees("ns") == ["MSFT"]
    assert set(await store.dump("ns")) == {"ns.MSFT.price", "ns.info"}


@pytest.mark.asyncio
async def test_redis_errors_surface_as_store_unavailable() -> None:
    store = RedisStateStore(redis_client=DownRedis())

    with pytest.raises(StoreUnavailable):
        await store.write_leaf("ns.AAPL.price", 1)
    with pytest.raises(StoreUnavailable):
        await store.list_subtrees("ns")


@pytest.mark.asyncio
async def test_close_releases_client() -> None:
    fake = FakeRedis()
    await RedisStateStore(redis_client=fake).close()
    assert fake.closed is True


def test_requires_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisStateStore()
