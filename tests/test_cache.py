import asyncio

import pytest

from usd1_radar.cache import STATE_EXPIRED, STATE_FRESH, STATE_STALE, SWRCache
from usd1_radar.errors import SourceUnavailable


class Loader:
    def __init__(self):
        self.calls = 0
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise SourceUnavailable("all providers down")
        return [f"token-{self.calls}"]


def test_rejects_stale_window_shorter_than_fresh():
    with pytest.raises(ValueError):
        SWRCache(Loader(), fresh_ttl=30, stale_ttl=10)


@pytest.mark.anyio("asyncio")
async def test_empty_cache_awaits_loader_then_serves_fresh(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)

    first = await cache.get()
    assert first.cached is False
    assert first.snapshot.data == ("token-1",)
    assert first.snapshot.timestamp == clock.now

    clock.advance(14)
    second = await cache.get()
    assert second.cached is True
    assert second.stale is False
    assert loader.calls == 1
    assert cache.state() == STATE_FRESH


@pytest.mark.anyio("asyncio")
async def test_concurrent_stale_reads_trigger_one_refresh(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)
    await cache.get()
    clock.advance(20)
    assert cache.state() == STATE_STALE

    loader.gate = asyncio.Event()
    reads = await asyncio.gather(*(cache.get() for _ in range(10)))

    assert all(r.cached and r.stale for r in reads)
    assert all(r.snapshot.data == ("token-1",) for r in reads)
    assert cache.refreshing

    loader.gate.set()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert loader.calls == 2
    assert cache.snapshot.data == ("token-2",)
    await cache.aclose()


@pytest.mark.anyio("asyncio")
async def test_expired_failure_serves_previous_snapshot(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)
    await cache.get()
    clock.advance(46)
    assert cache.state() == STATE_EXPIRED

    loader.fail = True
    read = await cache.get()

    assert read.cached is True
    assert read.stale is True
    assert read.snapshot.data == ("token-1",)
    assert "all providers down" in read.error


@pytest.mark.anyio("asyncio")
async def test_failure_without_snapshot_returns_empty_with_error(clock):
    loader = Loader()
    loader.fail = True
    cache = SWRCache(loader, clock=clock)

    read = await cache.get()

    assert read.snapshot.data == ()
    assert read.cached is False
    assert read.error


@pytest.mark.anyio("asyncio")
async def test_force_refresh_bypasses_fresh_snapshot(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)
    await cache.get()
    read = await cache.get(force_refresh=True)
    assert read.cached is False
    assert read.snapshot.data == ("token-2",)


@pytest.mark.anyio("asyncio")
async def test_concurrent_expired_reads_join_one_refresh(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)

    reads = await asyncio.gather(*(cache.get() for _ in range(5)))

    assert loader.calls == 1
    assert {r.snapshot.data for r in reads} == {("token-1",)}


@pytest.mark.anyio("asyncio")
async def test_aclose_cancels_background_refresh(clock):
    loader = Loader()
    cache = SWRCache(loader, clock=clock)
    await cache.get()
    clock.advance(20)
    loader.gate = asyncio.Event()
    await cache.get()
    assert cache.refreshing

    await cache.aclose()

    assert not cache.refreshing
    assert cache.snapshot.data == ("token-1",)
