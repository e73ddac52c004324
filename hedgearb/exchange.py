# hedgearb/exchange.py
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt

from .errors import VenueError, VenueTimeout
from .models import MarketType


class ExchangeVenue(ABC):
    """
    The one capability surface the core dispatches through. Every call is
    independently fallible; callers bound each one with their own timeout.
    Order methods return the venue's order dict (at least 'id', and 'average'
    or 'price' when the venue reports them).
    """
    name: str

    @property
    def is_available(self) -> bool:
        return True

    def supports(self, instrument: str, market: MarketType) -> bool:
        return True

    async def initialize(self) -> bool:
        return True

    async def close(self):
        pass

    @abstractmethod
    async def fetch_spot_price(self, instrument: str) -> float: ...

    @abstractmethod
    async def fetch_futures_price(self, instrument: str) -> float: ...

    @abstractmethod
    async def fetch_funding_rate(self, instrument: str) -> float: ...

    @abstractmethod
    async def fetch_order_book_depth(self, instrument: str, limit: int = 20) -> Dict[str, Any]: ...

    @abstractmethod
    async def fetch_free_balance(self, market: MarketType = MarketType.SPOT) -> float: ...

    @abstractmethod
    async def place_market_buy(self, instrument: str, qty: float) -> Dict[str, Any]: ...

    @abstractmethod
    async def place_market_sell(self, instrument: str, qty: float) -> Dict[str, Any]: ...

    @abstractmethod
    async def place_futures_open(self, instrument: str, qty: float, side: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def place_futures_close(self, instrument: str, qty: float, side: str = 'buy') -> Dict[str, Any]: ...

    @abstractmethod
    async def set_leverage(self, instrument: str, leverage: int): ...


def perp_symbol(instrument: str) -> str:
    """'BTC/USDT' -> 'BTC/USDT:USDT' (ccxt linear perpetual notation)."""
    if ':' in instrument:
        return instrument
    quote = instrument.split('/')[1]
    return f"{instrument}:{quote}"


class CcxtVenue(ExchangeVenue):
    """
    Adapter over ccxt's async clients. Holds one spot client and one swap
    client for the same venue and translates ccxt errors into VenueTimeout /
    VenueError.
    """
    def __init__(self, name: str, creds: Dict[str, Any], config: dict, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger("hedgearb.exchange")
        self.quote_ccy = config['balance']['quote_currency']
        self._available = False

        ex_class = getattr(ccxt, name)
        base_opts = {
            'apiKey': creds.get('api_key', ''),
            'secret': creds.get('secret', ''),
            'password': creds.get('password', ''),  # OKX/Bitget/KuCoin require password
            'timeout': config['performance']['network_timeout_ms'],
            'enableRateLimit': True,
        }
        self.spot = ex_class({**base_opts, 'options': {'defaultType': 'spot'}})
        self.swap = ex_class({**base_opts, 'options': {'defaultType': 'swap'}})

        if config['system'].get('environment') == 'testnet':
            self.spot.set_sandbox_mode(True)
            self.swap.set_sandbox_mode(True)

    @property
    def is_available(self) -> bool:
        return self._available

    def supports(self, instrument: str, market: MarketType) -> bool:
        if market is MarketType.SPOT:
            markets, symbol = self.spot.markets, instrument
        else:
            markets, symbol = self.swap.markets, perp_symbol(instrument)
        # Before load_markets() we cannot tell, so let the call decide.
        return markets is None or symbol in markets

    async def initialize(self) -> bool:
        await self._call("load_markets", self.spot.load_markets())
        await self._call("load_markets", self.swap.load_markets())
        self._available = True
        return True

    async def close(self):
        self._available = False
        await self.spot.close()
        await self.swap.close()

    async def _call(self, op: str, coro):
        try:
            return await coro
        except ccxt.RequestTimeout as e:
            raise VenueTimeout(f"{self.name} {op} timed out: {e}", venue=self.name, operation=op) from e
        except ccxt.BaseError as e:
            raise VenueError(f"{self.name} {op} failed: {e}", venue=self.name, operation=op,
                             ccxt_error=type(e).__name__) from e

    async def fetch_spot_price(self, instrument: str) -> float:
        ticker = await self._call("fetch_spot_price", self.spot.fetch_ticker(instrument))
        return float(ticker['last'])

    async def fetch_futures_price(self, instrument: str) -> float:
        ticker = await self._call("fetch_futures_price", self.swap.fetch_ticker(perp_symbol(instrument)))
        return float(ticker['last'])

    async def fetch_funding_rate(self, instrument: str) -> float:
        data = await self._call("fetch_funding_rate", self.swap.fetch_funding_rate(perp_symbol(instrument)))
        return float(data.get('fundingRate') or 0.0)

    async def fetch_order_book_depth(self, instrument: str, limit: int = 20) -> Dict[str, Any]:
        book = await self._call("fetch_order_book_depth", self.spot.fetch_order_book(instrument, limit))
        return {'bids': book['bids'], 'asks': book['asks']}

    async def fetch_free_balance(self, market: MarketType = MarketType.SPOT) -> float:
        client = self.spot if market is MarketType.SPOT else self.swap
        balance = await self._call("fetch_free_balance", client.fetch_balance())
        return float((balance.get('free') or {}).get(self.quote_ccy) or 0.0)

    async def place_market_buy(self, instrument: str, qty: float) -> Dict[str, Any]:
        return await self._call("place_market_buy", self.spot.create_order(instrument, 'market', 'buy', qty))

    async def place_market_sell(self, instrument: str, qty: float) -> Dict[str, Any]:
        return await self._call("place_market_sell", self.spot.create_order(instrument, 'market', 'sell', qty))

    async def place_futures_open(self, instrument: str, qty: float, side: str) -> Dict[str, Any]:
        return await self._call(
            "place_futures_open",
            self.swap.create_order(perp_symbol(instrument), 'market', side, qty, None, {'reduceOnly': False}),
        )

    async def place_futures_close(self, instrument: str, qty: float, side: str = 'buy') -> Dict[str, Any]:
        return await self._call(
            "place_futures_close",
            self.swap.create_order(perp_symbol(instrument), 'market', side, qty, None, {'reduceOnly': True}),
        )

    async def set_leverage(self, instrument: str, leverage: int):
        return await self._call("set_leverage", self.swap.set_leverage(leverage, perp_symbol(instrument)))
