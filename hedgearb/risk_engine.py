# hedgearb/risk_engine.py
import asyncio
import logging
import math
import time
from typing import Dict, Optional

from .balance_cache import BalanceCache
from .depth import estimate_slippage
from .errors import RiskRejected, ValidationError
from .exchange import ExchangeVenue
from .models import ExecutionAuthorization, MarketType, OpportunitySnapshot
from .state import TradingState


class RiskEngine:
    """
    Enforces risk limits before any order is sent. Checks run in a fixed
    order, stop at the first failure, and fail closed: anything the gate
    cannot verify is a rejection.
    """
    def __init__(self, config: dict, state: TradingState, venues: Dict[str, ExchangeVenue],
                 balances: BalanceCache, logger: Optional[logging.Logger] = None):
        self.cfg = config['risk']
        self.simulation = config['system']['simulation_mode']
        self.order_timeout = config['execution']['order_timeout_seconds']
        self.state = state
        self.venues = venues
        self.balances = balances
        self.logger = logger or logging.getLogger("hedgearb.risk")

    def validate_opportunity(self, opp: OpportunitySnapshot):
        """
        Filter out missing or anomalous opportunity data before it gets near
        the gate.
        """
        if opp is None:
            raise ValidationError("No opportunity supplied", code="MISSING_OPPORTUNITY")
        if not opp.instrument:
            raise ValidationError("Opportunity has no instrument", code="MISSING_INSTRUMENT")
        if not opp.buy_venue or not opp.sell_venue:
            raise ValidationError("Opportunity is missing a venue", code="MISSING_VENUE",
                                  buy_venue=opp.buy_venue, sell_venue=opp.sell_venue)
        if opp.buy_venue == opp.sell_venue:
            raise ValidationError(f"Both legs on {opp.buy_venue}; no hedge possible", code="SAME_VENUE",
                                  venue=opp.buy_venue)
        for label, price in (('buy_price', opp.buy_price), ('sell_price', opp.sell_price)):
            if price is None or not math.isfinite(price) or price <= 0:
                raise ValidationError(f"Invalid {label}: {price}", code="INVALID_PRICE", **{label: price})
        if opp.net_spread_pct is None or not math.isfinite(opp.net_spread_pct):
            raise ValidationError(f"Invalid net spread: {opp.net_spread_pct}", code="INVALID_SPREAD",
                                  net_spread_pct=opp.net_spread_pct)

    async def preflight(self, opp: OpportunitySnapshot, position_size_usd: float) -> ExecutionAuthorization:
        """
        The Final Gatekeeper: can we execute this specific opportunity at this size?
        Raises RiskRejected naming the first rule that failed.
        An authorization carries a volume hold in TradingState; the caller must
        settle it (record_success(reserved=True)) or hand it back (release_trade).
        """
        passed = []

        # 1. Emergency stop
        if self.state.emergency_stop:
            raise RiskRejected("⛔ EMERGENCY STOP ACTIVE", code="EMERGENCY_STOP")
        passed.append("EMERGENCY_STOP")

        # 2. Circuit breaker
        fails = self.state.consecutive_failures
        if fails >= self.cfg['max_consecutive_failures']:
            raise RiskRejected(f"⛔ Too many failed orders ({fails})", code="FAILURE_CEILING",
                               consecutive_failures=fails, ceiling=self.cfg['max_consecutive_failures'])
        passed.append("FAILURE_CEILING")

        # 3. Spread band: too small is unprofitable, too large is usually stale or bad data
        spread = opp.net_spread_pct
        lo, hi = self.cfg['min_spread_pct'], self.cfg['max_spread_pct']
        if spread < lo or spread > hi:
            raise RiskRejected(f"Spread out of range: {spread:.3f}% not in [{lo}, {hi}]",
                               code="SPREAD_OUT_OF_RANGE", net_spread_pct=spread, min_spread_pct=lo, max_spread_pct=hi)
        passed.append("SPREAD_OUT_OF_RANGE")

        # 4. Daily volume. The hold taken here also occupies a failure slot
        # until the caller settles it with record_success or release_trade.
        cap = self.cfg['max_daily_volume_usd']
        refused = await self.state.reserve_trade(position_size_usd, cap)
        if refused == "FAILURE_CEILING":
            fails, in_flight = self.state.consecutive_failures, self.state.trades_in_flight
            raise RiskRejected(f"⛔ Too many failed or in-flight orders ({fails} + {in_flight})",
                               code="FAILURE_CEILING", consecutive_failures=fails, trades_in_flight=in_flight,
                               ceiling=self.cfg['max_consecutive_failures'])
        if refused == "DAILY_VOLUME_CAP":
            volume, reserved = self.state.current_daily_volume(), self.state.reserved_volume_usd
            raise RiskRejected(f"Daily limit reached: ${volume + reserved:,.2f} + ${position_size_usd:,.2f} > ${cap:,.2f}",
                               code="DAILY_VOLUME_CAP", daily_volume_usd=volume, reserved_volume_usd=reserved,
                               position_size_usd=position_size_usd, daily_cap_usd=cap)
        passed.append("DAILY_VOLUME_CAP")

        try:
            self._check_size_and_venues(opp, position_size_usd)
            passed.extend(("POSITION_SIZE_CAP", "VENUE_UNAVAILABLE"))

            if not self.simulation:
                # 7. Free balance on both sides (cached)
                await self._check_balances(opp, position_size_usd)
                passed.append("INSUFFICIENT_BALANCE")

                # 8. Order book slippage on the spot buy (opt-in)
                if self.cfg.get('max_slippage_pct') is not None:
                    await self._check_slippage(opp, position_size_usd)
                    passed.append("SLIPPAGE_TOO_HIGH")
        except BaseException:
            await self.state.release_trade(position_size_usd)
            raise

        return ExecutionAuthorization(opportunity=opp, position_size_usd=position_size_usd,
                                      checks_passed=passed, authorized_at=time.time())

    def _check_size_and_venues(self, opp: OpportunitySnapshot, position_size_usd: float):
        # 5. Per-trade size
        max_size = self.cfg['max_position_size_usd']
        if position_size_usd > max_size:
            raise RiskRejected(f"Position too large: ${position_size_usd:,.2f} > ${max_size:,.2f}",
                               code="POSITION_SIZE_CAP", position_size_usd=position_size_usd, max_position_size_usd=max_size)

        # 6. Venues configured and up
        for venue_name in (opp.buy_venue, opp.sell_venue):
            venue = self.venues.get(venue_name)
            if venue is None or not venue.is_available:
                raise RiskRejected(f"Exchange unavailable: {venue_name}", code="VENUE_UNAVAILABLE",
                                   venue=venue_name, configured=venue is not None)

    async def _check_balances(self, opp: OpportunitySnapshot, size: float):
        legs = ((opp.buy_venue, MarketType.SPOT), (opp.sell_venue, MarketType.FUTURES))
        results = await asyncio.gather(*(self.balances.get(v, m) for v, m in legs), return_exceptions=True)
        for (venue, market), res in zip(legs, results):
            if isinstance(res, BaseException):
                raise RiskRejected(f"Balance check failed on {venue}: {res}", code="BALANCE_UNAVAILABLE",
                                   venue=venue, market=market.value) from res
            if res < size:
                raise RiskRejected(f"Insufficient {market.value} balance on {venue}: ${res:,.2f}",
                                   code="INSUFFICIENT_BALANCE", venue=venue, market=market.value,
                                   balance_usd=res, required_usd=size, shortfall_usd=size - res)

    async def _check_slippage(self, opp: OpportunitySnapshot, size: float):
        ceiling = self.cfg['max_slippage_pct']
        try:
            book = await asyncio.wait_for(
                self.venues[opp.buy_venue].fetch_order_book_depth(opp.instrument, 20), timeout=self.order_timeout
            )
        except Exception as e:
            raise RiskRejected(f"Order book unavailable on {opp.buy_venue}: {e}", code="DEPTH_UNAVAILABLE",
                               venue=opp.buy_venue) from e
        est = estimate_slippage(book, size, opp.buy_price, side='buy')
        if est['slippage_pct'] > ceiling or est['warning'] == 'LOW_DEPTH':
            raise RiskRejected(f"Predicted slippage {est['slippage_pct']:.3f}% on {opp.buy_venue} ({est['warning']})",
                               code="SLIPPAGE_TOO_HIGH", venue=opp.buy_venue, slippage_pct=est['slippage_pct'],
                               max_slippage_pct=ceiling, depth=est['depth'], quantity=est['quantity'])
