# tests/base/test_cache.py

import pytest

from async_criteria.base import cache as cache_module
from async_criteria.base.cache import InMemoryResultCache, derive_cache_key


class FakeClock:
    def __init__(self, now):
        self._now = now

    def monotonic(self):
        return self._now[0]


@pytest.fixture
def store() -> InMemoryResultCache:
    return InMemoryResultCache()


async def test_put_and_get(store):
    await store.put("users_1", [1, 2], 60)
    assert await store.get("users_1") == [1, 2]
    assert await store.exists("users_1")


async def test_missing_key_returns_none(store):
    assert await store.get("nope") is None
    assert not await store.exists("nope")


async def test_entries_expire(store, monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(cache_module, "time", FakeClock(now))
    await store.put("k", "v", 10)
    now[0] = 1009.0
    assert await store.get("k") == "v"
    now[0] = 1011.0
    assert await store.get("k") is None


async def test_zero_lifetime_never_expires(store, monkeypatch):
    now = [0.0]
    monkeypatch.setattr(cache_module, "time", FakeClock(now))
    await store.put("k", "v", 0)
    now[0] = 10 ** 9
    assert await store.get("k") == "v"


async def test_evict(store):
    await store.put("k", 1)
    assert await store.evict("k") is True
    assert await store.evict("k") is False


async def test_clear_by_prefix(store):
    await store.put("users_a", 1)
    await store.put("users_b", 2)
    await store.put("orders_a", 3)
    await store.clear("users")
    assert await store.get("users_a") is None
    assert await store.get("orders_a") == 3
    await store.clear()
    assert await store.get("orders_a") is None


def test_derive_cache_key_is_stable():
    first = derive_cache_key("users", ["SELECT 1", [1, "a"]])
    second = derive_cache_key("users", ["SELECT 1", [1, "a"]])
    other = derive_cache_key("users", ["SELECT 1", [2, "a"]])
    assert first == second
    assert first != other
    assert first.startswith("users_")
    assert len(first) == len("users_") + 32
