# hedgearb/position_manager.py
import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple

from .errors import HedgeArbError, PartialFillError, ValidationError, VenueError, VenueTimeout
from .exchange import ExchangeVenue
from .execution import fill_price, race_leg
from .models import CloseDecision, CloseResult, Position, PositionStatus, PnLBreakdown

BOOKS = ('positions', 'closed_positions', 'failed_trades')


class PositionLedger:
    """
    Sole owner of hedge positions: open book, closed history and the book of
    failed trades. Computes PnL, applies the auto-close policy and unwinds.

    An unwind that completes only one leg leaves the position OPEN and
    flagged; flagged positions are skipped by the monitor, and a manual close
    only sends the leg that is still open.
    """
    def __init__(self, config: dict, venues: Dict[str, ExchangeVenue], store, state=None, notifier=None,
                 audit_log=None, logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.cfg = config['positions']
        self.history_limit = self.cfg['history_limit']
        self.order_timeout = config['execution']['order_timeout_seconds']
        self.quote_timeout = config['performance']['quote_timeout_seconds']
        self.venues = venues
        self.store = store
        self.state = state
        self.notifier = notifier
        self.audit_log = audit_log
        self.logger = logger or logging.getLogger("hedgearb.positions")
        self.clock = clock

        self.positions: Dict[str, Position] = {}
        self.closed: List[Position] = []
        self.failed: Dict[str, Position] = {}
        self._closing = set()
        self._late_tasks = set()
        self.running = False

    # --- persistence ----------------------------------------------------------

    async def load(self):
        for data in await self.store.load('positions', []):
            position = Position.from_dict(data)
            self.positions[position.trade_id] = position
        self.closed = [Position.from_dict(d) for d in await self.store.load('closed_positions', [])]
        for data in await self.store.load('failed_trades', []):
            position = Position.from_dict(data)
            self.failed[position.trade_id] = position
        self._trim_history()
        self.logger.info(f"📊 Loaded {len(self.positions)} open positions, {len(self.closed)} closed")

    def _book(self, name: str) -> List[dict]:
        if name == 'positions':
            return [p.to_dict() for p in self.positions.values()]
        if name == 'closed_positions':
            return [p.to_dict() for p in self.closed]
        return [p.to_dict() for p in self.failed.values()]

    async def persist(self, *books: str):
        """Saves the named books, or all of them."""
        try:
            for name in books or BOOKS:
                await self.store.save(name, self._book(name))
        except OSError as e:
            self.logger.error(f"❌ Failed to save positions: {e}")

    # --- bookkeeping ----------------------------------------------------------

    def _trim_history(self):
        """Keeps the newest history_limit closed and failed records. Flagged failures are never dropped."""
        if len(self.closed) > self.history_limit:
            del self.closed[:len(self.closed) - self.history_limit]
        excess = len(self.failed) - self.history_limit
        if excess > 0:
            resolved = [tid for tid, p in self.failed.items() if not p.needs_attention]
            for trade_id in resolved[:excess]:
                del self.failed[trade_id]

    async def open_position(self, position: Position):
        if position.trade_id in self.positions:
            raise ValidationError(f"Duplicate trade id {position.trade_id}", code="DUPLICATE_TRADE_ID",
                                  trade_id=position.trade_id)
        position.status = PositionStatus.OPEN
        self.positions[position.trade_id] = position
        await self.persist('positions')
        self.logger.info(f"✅ Position added: {position.trade_id}")

    async def record_failed(self, position: Position, error: HedgeArbError):
        position.status = PositionStatus.FAILED
        if isinstance(error, PartialFillError):
            position.needs_attention = True
        position.attention_reason = str(error)
        self.failed[position.trade_id] = position
        self._trim_history()
        await self.persist('failed_trades')

    async def promote_failed(self, trade_id: str) -> Position:
        """A FAILED trade whose missing leg filled late becomes a normal OPEN position."""
        position = self.failed.pop(trade_id)
        position.status = PositionStatus.OPEN
        position.needs_attention = False
        position.attention_reason = None
        self.positions[trade_id] = position
        await self.persist('positions', 'failed_trades')
        return position

    def get(self, trade_id: str) -> Optional[Position]:
        return self.positions.get(trade_id)

    # --- PnL ------------------------------------------------------------------

    def calculate_pnl(self, position: Position, current_spot: float, current_futures: float,
                      now: Optional[float] = None) -> PnLBreakdown:
        now = self.clock() if now is None else now
        amount = position.amount
        size = position.position_size_usd

        spot_pnl = (current_spot - position.spot_leg.price) * amount
        futures_pnl = (position.futures_leg.price - current_futures) * amount  # short
        unrealized = spot_pnl + futures_pnl

        closing_cost = size * self.cfg['closing_fees_pct'] / 100
        hours_held = (now - position.open_time) / 3600
        funding_periods = math.floor(hours_held / self.cfg['funding_interval_hours'])
        funding_cost = abs(position.funding_rate_at_open) * funding_periods * size

        net_pnl = unrealized - closing_cost - funding_cost
        return PnLBreakdown(
            spot_pnl=spot_pnl,
            futures_pnl=futures_pnl,
            unrealized_pnl=unrealized,
            closing_cost=closing_cost,
            hours_held=hours_held,
            funding_periods=funding_periods,
            funding_cost=funding_cost,
            net_pnl=net_pnl,
            net_pnl_pct=net_pnl / size * 100,
        )

    def should_close(self, position: Position, pnl: PnLBreakdown) -> CloseDecision:
        if not self.cfg['auto_close_enabled']:
            return CloseDecision(False, 'AUTO_CLOSE_DISABLED')

        if pnl.net_pnl_pct >= self.cfg['take_profit_pct']:
            return CloseDecision(True, f"TAKE_PROFIT ({pnl.net_pnl_pct:.3f}%)")

        if pnl.net_pnl_pct <= self.cfg['stop_loss_pct']:
            return CloseDecision(True, f"STOP_LOSS ({pnl.net_pnl_pct:.3f}%)")

        if pnl.hours_held >= self.cfg['max_position_hours']:
            return CloseDecision(True, f"MAX_TIME ({pnl.hours_held:.1f}h)")

        funding_pct = pnl.funding_cost / position.position_size_usd * 100
        if funding_pct >= self.cfg['max_funding_cost_pct']:
            return CloseDecision(True, f"HIGH_FUNDING ({funding_pct:.3f}%)")

        return CloseDecision(False, 'HOLDING')

    async def fetch_current_prices(self, position: Position) -> Tuple[float, float]:
        spot_venue = self.venues[position.spot_leg.venue]
        futures_venue = self.venues[position.futures_leg.venue]
        spot, futures = await asyncio.gather(
            asyncio.wait_for(spot_venue.fetch_spot_price(position.instrument), self.quote_timeout),
            asyncio.wait_for(futures_venue.fetch_futures_price(position.instrument), self.quote_timeout),
        )
        return float(spot), float(futures)

    # --- monitoring -----------------------------------------------------------

    async def evaluate(self, position: Position) -> Optional[CloseResult]:
        try:
            spot, futures = await self.fetch_current_prices(position)
        except (asyncio.TimeoutError, HedgeArbError, KeyError) as e:
            self.logger.warning(f"⚠️ Monitor skipped {position.trade_id}: prices unavailable ({str(e) or 'timeout'})")
            return None

        pnl = self.calculate_pnl(position, spot, futures)
        decision = self.should_close(position, pnl)
        self.logger.info(
            f"📊 {position.instrument} {position.trade_id}: PnL {pnl.net_pnl_pct:.3f}% | "
            f"{pnl.hours_held:.1f}h | {decision.reason}"
        )
        if decision.should_close:
            return await self.close_position(position.trade_id, decision.reason, prices=(spot, futures))
        return None

    async def monitor_once(self) -> List[CloseResult]:
        """One tick: every open, unflagged position is evaluated concurrently."""
        candidates = [p for p in self.positions.values() if not p.needs_attention and p.trade_id not in self._closing]
        if not candidates:
            return []
        results = await asyncio.gather(*(self.evaluate(p) for p in candidates), return_exceptions=True)
        closes = []
        for position, res in zip(candidates, results):
            if isinstance(res, BaseException):
                self.logger.error(f"❌ Monitor error ({position.trade_id}): {res}")
            elif res is not None:
                closes.append(res)
        return closes

    async def run_loop(self):
        self.running = True
        interval = self.cfg['check_interval_seconds']
        while self.running:
            if self.cfg['auto_close_enabled'] and self.positions:
                try:
                    await self.monitor_once()
                except Exception as e:
                    self.logger.error(f"❌ Position monitor cycle failed: {e}")
            await asyncio.sleep(interval)

    def stop(self):
        self.running = False

    # --- unwind ---------------------------------------------------------------

    async def close_position(self, trade_id: str, reason: str = 'MANUAL',
                             prices: Optional[Tuple[float, float]] = None) -> CloseResult:
        position = self.positions.get(trade_id)
        if position is None:
            return CloseResult(False, trade_id, None,
                               ValidationError(f"No open position {trade_id}", code="UNKNOWN_POSITION", trade_id=trade_id))
        if trade_id in self._closing:
            return CloseResult(False, trade_id, position,
                               ValidationError(f"Position {trade_id} is already closing", code="CLOSE_IN_PROGRESS",
                                               trade_id=trade_id))

        self._closing.add(trade_id)
        try:
            self.logger.info(f"🔴 Closing position: {trade_id} ({reason})")
            if position.simulated:
                return await self._close_simulated(position, reason, prices)
            return await self._close_live(position, reason)
        finally:
            self._closing.discard(trade_id)

    async def _close_simulated(self, position: Position, reason: str, prices: Optional[Tuple[float, float]]) -> CloseResult:
        if prices is None:
            try:
                prices = await self.fetch_current_prices(position)
            except (asyncio.TimeoutError, HedgeArbError, KeyError):
                prices = (position.spot_leg.price, position.futures_leg.price)
        for leg, price, tag in ((position.spot_leg, prices[0], 'spot'), (position.futures_leg, prices[1], 'futures')):
            leg.closed = True
            leg.close_price = price
            leg.close_order_id = f"SIM-{position.trade_id}-{tag}-close"
        await self._finalize_close(position, reason)
        return CloseResult(True, position.trade_id, position, None)

    async def _close_live(self, position: Position, reason: str) -> CloseResult:
        legs = []
        if not position.spot_leg.closed:
            legs.append('spot')
        if not position.futures_leg.closed:
            legs.append('futures')

        for leg in legs:
            venue_name = self._leg(position, leg).venue
            venue = self.venues.get(venue_name)
            if venue is None or not venue.is_available:
                error = VenueError(f"Exchange unavailable: {venue_name}", code="VENUE_UNAVAILABLE",
                                   trade_id=position.trade_id, venue=venue_name, leg=leg)
                self.logger.error(f"❌ Failed to close position: {error}")
                return CloseResult(False, position.trade_id, position, error)

        coros = []
        for leg in legs:
            leg_obj = self._leg(position, leg)
            venue = self.venues[leg_obj.venue]
            if leg == 'spot':
                order = venue.place_market_sell(position.instrument, leg_obj.amount)
            else:
                order = venue.place_futures_close(position.instrument, leg_obj.amount, 'buy')
            coros.append(race_leg(leg, leg_obj.venue, order, self.order_timeout,
                                  partial(self._on_late_close, position.trade_id, leg, reason)))

        results = await asyncio.gather(*coros, return_exceptions=True)
        failures = {}
        for leg, res in zip(legs, results):
            if isinstance(res, BaseException):
                failures[leg] = res
            else:
                self._mark_leg_closed(position, leg, res)

        if not failures:
            await self._finalize_close(position, reason)
            self.logger.info(f"✅ Position closed: {position.trade_id}")
            return CloseResult(True, position.trade_id, position, None)

        error = self._unwind_error(position, failures)
        position.needs_attention = True
        position.attention_reason = str(error)
        await self.persist('positions')
        if self.state is not None:
            await self.state.record_failure(count_trade=False)
        self.logger.critical(f"🚨 UNWIND INCOMPLETE {position.trade_id}: {error}. Flagged for manual attention.")
        self._publish('position_attention', error, trade_id=position.trade_id, instrument=position.instrument,
                      close_reason=reason)
        return CloseResult(False, position.trade_id, position, error)

    @staticmethod
    def _leg(position: Position, leg: str):
        return position.spot_leg if leg == 'spot' else position.futures_leg

    def _mark_leg_closed(self, position: Position, leg: str, order: dict):
        leg_obj = self._leg(position, leg)
        leg_obj.closed = True
        leg_obj.close_order_id = order.get('id')
        leg_obj.close_price = fill_price(order, leg_obj.price)

    @staticmethod
    def _unwind_error(position: Position, failures: Dict[str, BaseException]) -> HedgeArbError:
        closed = [leg for leg in ('spot', 'futures') if PositionLedger._leg(position, leg).closed]
        detail = "; ".join(f"{leg}: {err}" for leg, err in failures.items())
        if closed:
            return PartialFillError(f"Unwind left {', '.join(failures)} leg open ({detail})",
                                    trade_id=position.trade_id, failed_leg=list(failures)[0], filled_leg=closed[0])
        if all(isinstance(err, VenueTimeout) for err in failures.values()):
            return VenueTimeout(f"Unwind timed out ({detail})", trade_id=position.trade_id, failed_legs=list(failures))
        return VenueError(f"Unwind failed ({detail})", trade_id=position.trade_id, failed_legs=list(failures))

    async def _finalize_close(self, position: Position, reason: str):
        position.status = PositionStatus.CLOSED
        position.close_time = self.clock()
        position.close_reason = reason
        position.needs_attention = False
        self.positions.pop(position.trade_id, None)
        self.closed.append(position)
        self._trim_history()
        await self.persist('positions', 'closed_positions')
        self._publish('position_closed', trade_id=position.trade_id, instrument=position.instrument,
                      reason=reason, spot_close=position.spot_leg.close_price,
                      futures_close=position.futures_leg.close_price)
        await self._audit(position, reason)

    def _on_late_close(self, trade_id: str, leg: str, reason: str, order: dict):
        task = asyncio.ensure_future(self._apply_late_close(trade_id, leg, reason, order))
        self._late_tasks.add(task)
        task.add_done_callback(self._late_tasks.discard)

    async def _apply_late_close(self, trade_id: str, leg: str, reason: str, order: dict):
        """A close order that filled after its timeout still counts."""
        position = self.positions.get(trade_id)
        if position is None:
            return
        self._mark_leg_closed(position, leg, order)
        self.logger.warning(f"♻️ {trade_id}: {leg} close filled late (order {order.get('id')})")
        if position.spot_leg.closed and position.futures_leg.closed and trade_id not in self._closing:
            await self._finalize_close(position, reason)
        else:
            await self.persist('positions')

    # --- helpers --------------------------------------------------------------

    def _publish(self, event_type: str, error: Optional[HedgeArbError] = None, **fields):
        if self.notifier is None:
            return
        event = {'type': event_type}
        if error is not None:
            event.update(error.to_dict())
        event.update(fields)
        self.notifier.publish(event)

    async def _audit(self, position: Position, reason: str):
        if self.audit_log is None:
            return
        await self.audit_log.log_trade([
            datetime.now(timezone.utc).isoformat(), position.trade_id, 'CLOSE', position.instrument,
            position.spot_leg.venue, position.futures_leg.venue, f"{position.amount:.8f}",
            f"{position.spot_leg.close_price or 0:.8f}", f"{position.futures_leg.close_price or 0:.8f}",
            f"{position.position_size_usd:.2f}", f"{position.spread_at_open:.4f}", 'CLOSED', reason,
        ])

    def summary(self) -> List[dict]:
        return [p.to_dict() for p in self.positions.values()]
