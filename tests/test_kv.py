import asyncio

import pytest

from usd1_radar.kv import InMemoryKeyValueStore, RedisKeyValueStore, create_store


def test_in_memory_store_set_get_delete():
    async def run():
        store = InMemoryKeyValueStore()
        await store.set("bonkfun:verified_tokens", '["a"]')
        assert await store.get("bonkfun:verified_tokens") == '["a"]'
        await store.delete("bonkfun:verified_tokens")
        return await store.get("bonkfun:verified_tokens")

    assert asyncio.run(run()) is None


def test_in_memory_store_expires_entries():
    now = {"t": 1_000.0}

    async def run():
        store = InMemoryKeyValueStore(clock=lambda: now["t"])
        await store.set("k", "v", ttl=10)
        first = await store.get("k")
        now["t"] += 10
        return first, await store.get("k")

    assert asyncio.run(run()) == ("v", None)


def test_scan_prefix_is_sorted_and_filtered():
    async def run():
        store = InMemoryKeyValueStore()
        await store.set("volume:daily:2025-01-02", "b")
        await store.set("volume:daily:2025-01-01", "a")
        await store.set("volume:snapshots", "[]")
        return await store.scan_prefix("volume:daily:")

    assert asyncio.run(run()) == [
        ("volume:daily:2025-01-01", "a"),
        ("volume:daily:2025-01-02", "b"),
    ]


class _FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def scan_iter(self, match=None):
        prefix = (match or "*").rstrip("*")
        for key in list(self.data):
            if key.startswith(prefix):
                yield key.encode()

    async def aclose(self):
        self.closed = True


@pytest.mark.anyio("asyncio")
async def test_redis_store_round_trips_through_client():
    client = _FakeRedis()
    store = RedisKeyValueStore(client)
    await store.set("bonkfun:verified_tokens", "[]", ttl=604800.0)
    client.data["volume:daily:2025-01-01"] = b"{}"

    assert client.expiry["bonkfun:verified_tokens"] == 604800
    assert await store.get("volume:daily:2025-01-01") == "{}"
    assert await store.scan_prefix("volume:daily:") == [("volume:daily:2025-01-01", "{}")]
    await store.close()
    assert client.closed


def test_create_store_defaults_to_memory():
    assert isinstance(create_store(None), InMemoryKeyValueStore)
    assert isinstance(create_store(""), InMemoryKeyValueStore)
