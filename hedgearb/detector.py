# hedgearb/detector.py
import time
from typing import Callable, Dict, List, Optional

from .config import venue_fee_pct
from .models import InstrumentQuotes, OpportunitySnapshot


def calculate_spread(buy_price: float, sell_price: float) -> float:
    """Gross spread in percent of the buy price."""
    return (sell_price - buy_price) / buy_price * 100


def calculate_cost_pct(spot_fee_pct: float, futures_fee_pct: float, funding_rate: float,
                       funding_periods_per_day: int = 3) -> float:
    """
    Entry cost estimate in percent: both taker fees plus one day of funding
    on the short leg.
    """
    return spot_fee_pct + futures_fee_pct + abs(funding_rate) * 100 * funding_periods_per_day


class OpportunityDetector:
    """
    Picks, per instrument, the cheapest spot venue to buy and the richest
    futures venue to short, and keeps the pair when its cost-adjusted spread
    clears the activation threshold. Pure over one cycle's quotes.
    """
    def __init__(self, config: dict, clock: Callable[[], float] = time.time):
        self.config = config
        self.threshold = config['scanner']['activation_threshold_pct']
        self.funding_periods = config['scanner']['funding_periods_per_day']
        self.clock = clock

    def evaluate(self, instrument: str, quotes: InstrumentQuotes) -> Optional[OpportunitySnapshot]:
        """
        Returns the best pair for one instrument regardless of threshold, or
        None when no cross-venue hedge is possible.
        """
        spot = [q for q in quotes.spot if q.price > 0]
        futures = [q for q in quotes.futures if q.price > 0]
        if not spot or not futures:
            return None

        # min/max keep the first quote on ties, i.e. venue order
        best_buy = min(spot, key=lambda q: q.price)
        best_short = max(futures, key=lambda q: q.price)
        if best_buy.venue == best_short.venue:
            return None

        funding = best_short.funding_rate or 0.0
        gross = calculate_spread(best_buy.price, best_short.price)
        cost = calculate_cost_pct(
            venue_fee_pct(self.config, best_buy.venue, 'spot'),
            venue_fee_pct(self.config, best_short.venue, 'futures'),
            funding,
            self.funding_periods,
        )
        return OpportunitySnapshot(
            instrument=instrument,
            buy_venue=best_buy.venue,
            buy_price=best_buy.price,
            sell_venue=best_short.venue,
            sell_price=best_short.price,
            gross_spread_pct=gross,
            cost_pct=cost,
            net_spread_pct=gross - cost,
            funding_rate=funding,
            lifetime_seconds=0.0,
            detected_at=self.clock(),
        )

    def detect(self, quotes: Dict[str, InstrumentQuotes]) -> List[OpportunitySnapshot]:
        found = []
        for instrument, inst_quotes in quotes.items():
            opp = self.evaluate(instrument, inst_quotes)
            if opp is not None and opp.net_spread_pct >= self.threshold:
                found.append(opp)
        # sorted() is stable, reverse included
        return sorted(found, key=lambda o: o.net_spread_pct, reverse=True)
