# hedgearb/balance_cache.py
import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from .exchange import ExchangeVenue
from .models import CachedBalance, MarketType

CacheKey = Tuple[str, MarketType]


class BalanceCache:
    """
    TTL-bounded free-balance snapshot per venue and account type.
    Concurrent readers of the same stale entry share one in-flight fetch.
    """
    def __init__(self, venues: Dict[str, ExchangeVenue], ttl_seconds: float = 30.0,
                 logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.venues = venues
        self.ttl = ttl_seconds
        self.logger = logger or logging.getLogger("hedgearb.balance")
        self.clock = clock
        self._entries: Dict[CacheKey, CachedBalance] = {}
        self._inflight: Dict[CacheKey, asyncio.Task] = {}
        self.fetch_count = 0

    def peek(self, venue: str, market: MarketType = MarketType.SPOT) -> Optional[CachedBalance]:
        return self._entries.get((venue, market))

    async def get(self, venue: str, market: MarketType = MarketType.SPOT) -> float:
        key = (venue, market)
        entry = self._entries.get(key)
        if entry is not None and entry.age(self.clock()) < self.ttl:
            return entry.amount_usd

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        # shield: one cancelled waiter must not cancel the fetch for the others
        return await asyncio.shield(task)

    async def _refresh(self, key: CacheKey) -> float:
        venue_name, market = key
        self.fetch_count += 1
        amount = float(await self.venues[venue_name].fetch_free_balance(market))
        self._entries[key] = CachedBalance(venue_name, market, amount, self.clock())
        self.logger.debug(f"💰 {venue_name} {market.value} free balance: ${amount:,.2f}")
        return amount

    def invalidate(self, venue: Optional[str] = None):
        if venue is None:
            self._entries.clear()
        else:
            for key in [k for k in self._entries if k[0] == venue]:
                del self._entries[key]
