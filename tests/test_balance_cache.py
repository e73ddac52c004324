import asyncio

import pytest

from hedgearb.balance_cache import BalanceCache
from hedgearb.errors import VenueError
from hedgearb.models import MarketType

from conftest import FakeVenue


def cache_for(venue, clock, ttl=30.0):
    return BalanceCache({venue.name: venue}, ttl_seconds=ttl, clock=clock)


def test_fresh_entry_is_served_without_fetching(clock):
    venue = FakeVenue('mexc', balance=250.0)
    cache = cache_for(venue, clock)

    async def scenario():
        first = await cache.get('mexc')
        clock.advance(29.9)
        second = await cache.get('mexc')
        return first, second

    assert asyncio.run(scenario()) == (250.0, 250.0)
    assert venue.count('fetch_free_balance') == 1


def test_concurrent_readers_share_one_fetch(clock):
    venue = FakeVenue('mexc', balance=80.0, delays={'fetch_free_balance': 0.02})
    cache = cache_for(venue, clock)

    async def scenario():
        return await asyncio.gather(*(cache.get('mexc') for _ in range(10)))

    assert asyncio.run(scenario()) == [80.0] * 10
    assert venue.count('fetch_free_balance') == 1
    assert cache.fetch_count == 1


def test_stale_entry_is_refetched(clock):
    venue = FakeVenue('mexc', balance=100.0)
    cache = cache_for(venue, clock, ttl=30.0)

    async def scenario():
        await cache.get('mexc')
        venue.balances[MarketType.SPOT] = 40.0
        clock.advance(30.0)
        return await cache.get('mexc')

    assert asyncio.run(scenario()) == 40.0
    assert venue.count('fetch_free_balance') == 2


def test_spot_and_futures_accounts_are_cached_separately(clock):
    venue = FakeVenue('bitget')
    venue.balances[MarketType.FUTURES] = 12.0
    cache = cache_for(venue, clock)

    async def scenario():
        return await cache.get('bitget', MarketType.SPOT), await cache.get('bitget', MarketType.FUTURES)

    assert asyncio.run(scenario()) == (1000.0, 12.0)
    assert cache.peek('bitget', MarketType.FUTURES).amount_usd == 12.0


def test_fetch_failure_reaches_every_waiter_and_is_not_cached(clock):
    venue = FakeVenue('mexc', fail={'fetch_free_balance': VenueError("down")},
                      delays={'fetch_free_balance': 0.01})
    cache = cache_for(venue, clock)

    async def scenario():
        return await asyncio.gather(cache.get('mexc'), cache.get('mexc'), return_exceptions=True)

    results = asyncio.run(scenario())
    assert all(isinstance(r, VenueError) for r in results)
    assert venue.count('fetch_free_balance') == 1
    assert cache.peek('mexc') is None

    venue.fail.clear()
    assert asyncio.run(cache.get('mexc')) == 1000.0


def test_invalidate_forces_refresh(clock):
    venue = FakeVenue('mexc')
    cache = cache_for(venue, clock)

    async def scenario():
        await cache.get('mexc')
        cache.invalidate('mexc')
        await cache.get('mexc')

    asyncio.run(scenario())
    assert venue.count('fetch_free_balance') == 2


def test_unknown_venue_raises(clock):
    cache = cache_for(FakeVenue('mexc'), clock)
    with pytest.raises(KeyError):
        asyncio.run(cache.get('nowhere'))
