# hedgearb/price_feed.py
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .exchange import ExchangeVenue
from .models import InstrumentQuotes, MarketType, PriceQuote


class PriceFeedAggregator:
    """
    Polls every venue concurrently for spot price, futures price and funding
    rate of each instrument. A venue that errors or times out contributes no
    quotes for the cycle; the other venues are unaffected.
    """
    def __init__(self, venues: Dict[str, ExchangeVenue], instruments: List[str], config: dict,
                 logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.venues = venues
        self.instruments = list(instruments)
        self.timeout = config['performance']['quote_timeout_seconds']
        self.max_concurrent = config['performance']['max_concurrent_requests']
        self.logger = logger or logging.getLogger("hedgearb.price_feed")
        self.clock = clock
        self.last_failures: Dict[str, str] = {}

    async def fetch_all(self) -> Dict[str, InstrumentQuotes]:
        names = list(self.venues.keys())
        results = await asyncio.gather(*(self._fetch_venue(self.venues[n]) for n in names))

        out = {instrument: InstrumentQuotes() for instrument in self.instruments}
        for quotes in results:
            for q in quotes:
                bucket = out[q.instrument]
                if q.market is MarketType.SPOT:
                    bucket.spot.append(q)
                else:
                    bucket.futures.append(q)
        return out

    async def _fetch_venue(self, venue: ExchangeVenue) -> List[PriceQuote]:
        if not venue.is_available:
            return []
        sem = asyncio.Semaphore(self.max_concurrent)

        async def bounded(coro):
            async with sem:
                return await asyncio.wait_for(coro, timeout=self.timeout)

        async def one_spot(instrument: str) -> List[PriceQuote]:
            if not venue.supports(instrument, MarketType.SPOT):
                return []
            price = await bounded(venue.fetch_spot_price(instrument))
            return [PriceQuote(venue.name, instrument, MarketType.SPOT, float(price), None, self.clock())]

        async def one_futures(instrument: str) -> List[PriceQuote]:
            if not venue.supports(instrument, MarketType.FUTURES):
                return []
            price, funding = await asyncio.gather(
                bounded(venue.fetch_futures_price(instrument)),
                bounded(venue.fetch_funding_rate(instrument)),
                return_exceptions=True,
            )
            for res in (price, funding):
                if isinstance(res, BaseException):
                    raise res
            return [PriceQuote(venue.name, instrument, MarketType.FUTURES, float(price),
                               float(funding or 0.0), self.clock())]

        tasks = []
        for instrument in self.instruments:
            tasks.append(one_spot(instrument))
            tasks.append(one_futures(instrument))

        # return_exceptions=True lets every call settle before the venue is judged
        batches = await asyncio.gather(*tasks, return_exceptions=True)
        errors = [b for b in batches if isinstance(b, BaseException)]
        if errors:
            first = errors[0]
            reason = "timeout" if isinstance(first, asyncio.TimeoutError) else str(first)
            self.last_failures[venue.name] = reason
            self.logger.warning(
                f"⚠️ {venue.name.upper()} quote fetch failed ({reason}, {len(errors)} calls) - skipping venue this cycle"
            )
            return []

        self.last_failures.pop(venue.name, None)
        return [q for batch in batches for q in batch]
