"""Tests for the Ticker interval scheduler and the QueryCache."""

import asyncio
import logging

import pytest

from conftest import settle
from handover_sync.cache import QueryCache
from handover_sync.scheduler import SystemClock, Ticker


def test_ticker_fires_on_interval(clock):
    ticks = []

    async def tick():
        ticks.append(clock.elapsed)

    async def scenario():
        ticker = Ticker(2.0, tick, clock=clock)
        ticker.start()
        await clock.advance(7)
        ticker.stop()
        await clock.advance(10)

    asyncio.run(scenario())
    assert ticks == [2.0, 4.0, 6.0]


def test_ticker_run_immediately(clock):
    ticks = []

    async def tick():
        ticks.append(clock.elapsed)

    async def scenario():
        ticker = Ticker(5.0, tick, clock=clock)
        ticker.start(run_immediately=True)
        await clock.advance(5)
        ticker.stop()

    asyncio.run(scenario())
    assert ticks == [0.0, 5.0]


def test_ticker_survives_callback_errors(clock):
    ticks = []

    async def tick():
        ticks.append(clock.elapsed)
        raise RuntimeError("tick failed")

    async def scenario():
        ticker = Ticker(1.0, tick, clock=clock)
        ticker.start()
        await clock.advance(3)
        assert ticker.running is True
        ticker.stop()

    asyncio.run(scenario())
    assert len(ticks) == 3


def test_ticker_does_not_wait_for_slow_callbacks(clock):
    """Ticks keep their cadence even when a callback is still running."""
    started = []
    release = None

    async def tick():
        started.append(clock.elapsed)
        await release.wait()

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        ticker = Ticker(1.0, tick, clock=clock)
        ticker.start()
        await clock.advance(3)
        ticker.stop()
        release.set()
        await settle()

    asyncio.run(scenario())
    assert started == [1.0, 2.0, 3.0]


def test_ticker_stop_is_idempotent(clock):
    async def tick():
        pass

    async def scenario():
        ticker = Ticker(1.0, tick, clock=clock)
        ticker.stop()
        ticker.start()
        ticker.stop()
        ticker.stop()
        await settle()
        assert ticker.running is False

    asyncio.run(scenario())


def test_ticker_rejects_non_positive_interval():
    async def tick():
        pass

    with pytest.raises(ValueError):
        Ticker(0, tick)


def test_system_clock_is_timezone_aware():
    assert SystemClock().now().tzinfo is not None


def test_cache_get_or_fetch_and_invalidate():
    cache = QueryCache()
    fetches = []

    async def fetch():
        fetches.append(1)
        return ["patient"]

    async def scenario():
        assert await cache.get_or_fetch("/api/patients", fetch) == ["patient"]
        assert await cache.get_or_fetch("/api/patients", fetch) == ["patient"]

    asyncio.run(scenario())
    assert len(fetches) == 1

    cache.set("/api/patients/10A02", [])
    cache.set("/api/patients-history", [])
    assert cache.invalidate("/api/patients/") == 2
    assert "/api/patients-history" in cache
    assert cache.invalidate("/api/patients") == 0
    assert len(cache) == 1


def test_ticker_shutdown_cancels_and_awaits_callbacks(clock):
    finished = []

    async def tick():
        try:
            await asyncio.Event().wait()
        finally:
            finished.append(clock.elapsed)

    async def scenario():
        ticker = Ticker(1.0, tick, clock=clock)
        ticker.start()
        await clock.advance(2)
        assert ticker.pending == 2

        await ticker.shutdown()
        assert ticker.running is False
        assert ticker.pending == 0
        assert finished == [2.0, 2.0]

        await clock.advance(5)
        assert len(finished) == 2

    asyncio.run(scenario())


def test_ticker_logs_callback_traceback(clock, caplog):
    async def tick():
        raise RuntimeError("backend exploded")

    async def scenario():
        ticker = Ticker(1.0, tick, clock=clock, name="sync-ticker")
        ticker.start()
        await clock.advance(1)
        await ticker.shutdown()

    with caplog.at_level(logging.ERROR, logger="handover_sync.scheduler"):
        asyncio.run(scenario())

    failures = [r for r in caplog.records if "tick failed" in r.getMessage()]
    assert len(failures) == 1
    assert failures[0].exc_info is not None
    assert failures[0].exc_info[0] is RuntimeError


def test_cache_does_not_store_read_invalidated_in_flight():
    cache = QueryCache()
    release = None
    values = iter([["before sync"], ["after sync"]])

    async def fetch():
        await release.wait()
        return next(values)

    async def scenario():
        nonlocal release
        release = asyncio.Event()
        read = asyncio.ensure_future(cache.get_or_fetch("/api/patients", fetch))
        await settle()
        assert cache.generation("/api/patients") == 0

        cache.invalidate("/api/patients")
        assert cache.generation("/api/patients") == 1
        release.set()

        # The caller still gets its answer; the cache does not keep it.
        assert await read == ["before sync"]
        assert "/api/patients" not in cache
        assert await cache.get_or_fetch("/api/patients", fetch) == ["after sync"]
        assert cache.peek("/api/patients") == ["after sync"]

    asyncio.run(scenario())


def test_cache_clear_discards_reads_in_flight():
    cache = QueryCache()

    async def scenario():
        release = asyncio.Event()

        async def fetch():
            await release.wait()
            return ["census"]

        read = asyncio.ensure_future(cache.get_or_fetch("/api/patients", fetch))
        await settle()
        cache.clear()
        release.set()
        assert await read == ["census"]
        assert len(cache) == 0

    asyncio.run(scenario())
