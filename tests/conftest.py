import asyncio
import itertools
from typing import Any, Dict, Optional

import pytest

from hedgearb.config import load_config
from hedgearb.exchange import ExchangeVenue
from hedgearb.models import MarketType, OpportunitySnapshot
from hedgearb.notifier import NotificationSink, Notifier


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeVenue(ExchangeVenue):
    """
    In-memory venue. `fail` maps an operation name to the exception it raises,
    `delays` maps an operation name to seconds slept before answering.
    """
    def __init__(self, name: str, spot: Optional[Dict[str, float]] = None, futures: Optional[Dict[str, float]] = None,
                 funding: Optional[Dict[str, float]] = None, balance: float = 1000.0,
                 fail: Optional[Dict[str, Exception]] = None, delays: Optional[Dict[str, float]] = None,
                 available: bool = True, book: Optional[Dict[str, Any]] = None):
        self.name = name
        self.spot = spot or {}
        self.futures = futures or {}
        self.funding = funding or {}
        self.balances = {MarketType.SPOT: balance, MarketType.FUTURES: balance}
        self.fail = fail or {}
        self.delays = delays or {}
        self.book = book or {'bids': [], 'asks': []}
        self._available = available
        self.calls = []
        self._ids = itertools.count(1)

    @property
    def is_available(self) -> bool:
        return self._available

    def supports(self, instrument: str, market: MarketType) -> bool:
        prices = self.spot if market is MarketType.SPOT else self.futures
        return instrument in prices

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    async def _op(self, op: str, *args):
        self.calls.append((op,) + args)
        delay = self.delays.get(op)
        if delay:
            await asyncio.sleep(delay)
        if op in self.fail:
            raise self.fail[op]

    def _order(self, price: float) -> Dict[str, Any]:
        return {'id': f"{self.name}-{next(self._ids)}", 'average': price, 'status': 'closed'}

    async def fetch_spot_price(self, instrument):
        await self._op('fetch_spot_price', instrument)
        return self.spot[instrument]

    async def fetch_futures_price(self, instrument):
        await self._op('fetch_futures_price', instrument)
        return self.futures[instrument]

    async def fetch_funding_rate(self, instrument):
        await self._op('fetch_funding_rate', instrument)
        return self.funding.get(instrument, 0.0)

    async def fetch_order_book_depth(self, instrument, limit=20):
        await self._op('fetch_order_book_depth', instrument, limit)
        return self.book

    async def fetch_free_balance(self, market=MarketType.SPOT):
        await self._op('fetch_free_balance', market)
        return self.balances[market]

    async def place_market_buy(self, instrument, qty):
        await self._op('place_market_buy', instrument, qty)
        return self._order(self.spot.get(instrument, 0.0))

    async def place_market_sell(self, instrument, qty):
        await self._op('place_market_sell', instrument, qty)
        return self._order(self.spot.get(instrument, 0.0))

    async def place_futures_open(self, instrument, qty, side):
        await self._op('place_futures_open', instrument, qty, side)
        return self._order(self.futures.get(instrument, 0.0))

    async def place_futures_close(self, instrument, qty, side='buy'):
        await self._op('place_futures_close', instrument, qty, side)
        return self._order(self.futures.get(instrument, 0.0))

    async def set_leverage(self, instrument, leverage):
        await self._op('set_leverage', instrument, leverage)


class MemoryStore:
    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.saves = []

    async def load(self, key, default=None):
        return self.data.get(key, default)

    async def save(self, key, data):
        self.saves.append(key)
        self.data[key] = data


class SlowStore(MemoryStore):
    """Every save yields to the loop for `delay` seconds, like a real disk write."""
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def save(self, key, data):
        await asyncio.sleep(self.delay)
        await super().save(key, data)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events = []

    async def emit(self, event):
        self.events.append(event)

    def types(self):
        return [e['type'] for e in self.events]


def make_config(**sections) -> dict:
    return load_config(path='does-not-exist.yaml', overrides=sections)


def make_opportunity(**fields) -> OpportunitySnapshot:
    base = dict(
        instrument='ADA/USDT', buy_venue='mexc', buy_price=100.0, sell_venue='bitget', sell_price=101.0,
        gross_spread_pct=1.0, cost_pct=0.16, net_spread_pct=0.84, funding_rate=0.0001,
        lifetime_seconds=0.0, detected_at=1_700_000_000.0,
    )
    base.update(fields)
    return OpportunitySnapshot(**base)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return Notifier([sink])
