# hedgearb/execution.py
import asyncio
import itertools
import logging
import time
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, Optional

from .errors import (HedgeArbError, PartialFillError, RiskRejected, ValidationError, VenueError,
                     VenueTimeout)
from .exchange import ExchangeVenue
from .models import ExecutionResult, Leg, OpportunitySnapshot, Position, PositionStatus

LateFillHandler = Callable[[Dict[str, Any]], None]


async def race_leg(leg: str, venue: str, coro, timeout: float,
                   on_late_fill: Optional[LateFillHandler] = None) -> Dict[str, Any]:
    """
    Races one order against a local timeout. On timeout the request is NOT
    cancelled: it keeps running, and if it later succeeds on_late_fill
    receives the order dict. Errors come back as VenueTimeout / VenueError
    tagged with the leg.
    """
    task = asyncio.ensure_future(coro)
    done, _ = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        exc = task.exception()
        if exc is None:
            return task.result()
        if isinstance(exc, HedgeArbError):
            exc.context.setdefault('leg', leg)
            exc.context.setdefault('venue', venue)
            raise exc
        raise VenueError(f"{leg} order failed on {venue}: {exc}", leg=leg, venue=venue) from exc

    task.add_done_callback(partial(_deliver_late, on_late_fill))
    raise VenueTimeout(f"{leg.capitalize()} order timeout on {venue} after {timeout}s",
                       leg=leg, venue=venue, timeout_seconds=timeout)


def _deliver_late(handler: Optional[LateFillHandler], task: asyncio.Task):
    if task.cancelled():
        return
    if task.exception() is not None:
        return
    if handler is not None:
        handler(task.result())


def fill_price(order: Dict[str, Any], quoted: float) -> float:
    return float(order.get('average') or order.get('price') or quoted)


class ExecutionService:
    """
    Opens hedges: spot buy on the cheap venue, futures short on the rich one,
    both legs fired together with independent timeouts.

    A half-filled hedge is reported and escalated for manual intervention;
    the filled leg is never unwound automatically.
    """
    def __init__(self, config: dict, venues: Dict[str, ExchangeVenue], risk, state, ledger, notifier,
                 audit_log=None, logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.venues = venues
        self.risk = risk
        self.state = state
        self.ledger = ledger
        self.notifier = notifier
        self.audit_log = audit_log
        self.logger = logger or logging.getLogger("hedgearb.execution")
        self.clock = clock

        self.simulation = config['system']['simulation_mode']
        self.position_size = config['trading']['position_size_usd']
        self.leverage = config['trading']['futures_leverage']
        self.order_timeout = config['execution']['order_timeout_seconds']
        self.simulate_delay = config['execution']['simulate_delay_seconds']

        self._seq = itertools.count(1)
        self._issued_ids = set()
        # trades with legs out; late fills park here until the trade is settled
        self._pending_late: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._late_tasks = set()

    @property
    def mode(self) -> str:
        return 'SIMULATION' if self.simulation else 'LIVE'

    def _new_trade_id(self, instrument: str) -> str:
        base = instrument.split('/')[0] if instrument else 'UNKNOWN'
        trade_id = f"{base}_{int(self.clock() * 1000)}"
        while trade_id in self._issued_ids:
            trade_id = f"{base}_{int(self.clock() * 1000)}-{next(self._seq)}"
        self._issued_ids.add(trade_id)
        return trade_id

    async def execute(self, opp: OpportunitySnapshot, position_size_usd: Optional[float] = None) -> ExecutionResult:
        start = time.perf_counter()
        size = self.position_size if position_size_usd is None else position_size_usd
        trade_id = self._new_trade_id(getattr(opp, 'instrument', None))

        try:
            self.risk.validate_opportunity(opp)
            await self.risk.preflight(opp, size)
        except (ValidationError, RiskRejected) as e:
            await self.state.record_rejection()
            self.logger.info(f"🚫 {trade_id} not executed: {e}")
            return ExecutionResult(False, trade_id, self.mode, None, e, _elapsed_ms(start))

        amount = size / opp.buy_price
        self.logger.info(
            f"⚡ EXECUTION TRIGGERED: {opp.instrument} | Buy spot {opp.buy_venue} @ {opp.buy_price} -> "
            f"Short futures {opp.sell_venue} @ {opp.sell_price} | Amt: {amount:.6f} | Net: {opp.net_spread_pct:.3f}%"
        )

        try:
            if self.simulation:
                result = await self._execute_simulated(trade_id, opp, size, amount)
            else:
                result = await self._execute_live(trade_id, opp, size, amount)
        except BaseException:
            self._pending_late.pop(trade_id, None)
            if trade_id not in self.ledger.positions:
                await self.state.release_trade(size)
            raise
        if not result.success:
            await self.state.release_trade(size)
        result.execution_latency_ms = _elapsed_ms(start)
        return result

    def _build_position(self, trade_id: str, opp: OpportunitySnapshot, size: float, amount: float,
                        spot_leg: Leg, futures_leg: Leg, simulated: bool) -> Position:
        return Position(
            trade_id=trade_id,
            instrument=opp.instrument,
            spot_leg=spot_leg,
            futures_leg=futures_leg,
            position_size_usd=size,
            spread_at_open=opp.net_spread_pct,
            funding_rate_at_open=opp.funding_rate,
            open_time=self.clock(),
            simulated=simulated,
        )

    async def _execute_simulated(self, trade_id: str, opp: OpportunitySnapshot, size: float, amount: float) -> ExecutionResult:
        if self.simulate_delay > 0:
            await asyncio.sleep(self.simulate_delay)
        spot_leg = Leg(opp.buy_venue, opp.buy_price, amount, f"SIM-{trade_id}-spot", filled=True)
        futures_leg = Leg(opp.sell_venue, opp.sell_price, amount, f"SIM-{trade_id}-futures", filled=True)
        position = self._build_position(trade_id, opp, size, amount, spot_leg, futures_leg, simulated=True)
        await self._book_success(position, opp)
        self.logger.info(f"🔵 SIMULATION: {opp.instrument} filled at quoted prices | Est. Profit: ${size * opp.net_spread_pct / 100:.4f}")
        return ExecutionResult(True, trade_id, self.mode, position, None)

    async def _execute_live(self, trade_id: str, opp: OpportunitySnapshot, size: float, amount: float) -> ExecutionResult:
        spot_venue = self.venues[opp.buy_venue]
        futures_venue = self.venues[opp.sell_venue]

        try:
            await race_leg('futures', opp.sell_venue,
                           futures_venue.set_leverage(opp.instrument, self.leverage), self.order_timeout)
        except HedgeArbError as e:
            self.logger.error(f"❌ {trade_id}: leverage setup failed, no orders sent: {e}")
            await self.state.record_failure()
            self._publish('trade_failed', e, trade_id=trade_id, instrument=opp.instrument, stage='set_leverage')
            return ExecutionResult(False, trade_id, self.mode, None, e)

        # Both legs go out together; neither cancels the other.
        self._pending_late[trade_id] = {}
        spot_res, futures_res = await asyncio.gather(
            race_leg('spot', opp.buy_venue, spot_venue.place_market_buy(opp.instrument, amount),
                     self.order_timeout, partial(self._on_late_fill, trade_id, 'spot')),
            race_leg('futures', opp.sell_venue, futures_venue.place_futures_open(opp.instrument, amount, 'sell'),
                     self.order_timeout, partial(self._on_late_fill, trade_id, 'futures')),
            return_exceptions=True,
        )
        spot_ok = not isinstance(spot_res, BaseException)
        futures_ok = not isinstance(futures_res, BaseException)

        spot_leg = Leg(opp.buy_venue, opp.buy_price, amount)
        futures_leg = Leg(opp.sell_venue, opp.sell_price, amount)
        if spot_ok:
            spot_leg.order_id, spot_leg.price, spot_leg.filled = spot_res.get('id'), fill_price(spot_res, opp.buy_price), True
        if futures_ok:
            futures_leg.order_id, futures_leg.price, futures_leg.filled = futures_res.get('id'), fill_price(futures_res, opp.sell_price), True
        position = self._build_position(trade_id, opp, size, amount, spot_leg, futures_leg, simulated=False)

        if spot_ok and futures_ok:
            self._pending_late.pop(trade_id, None)
            await self._book_success(position, opp)
            self.logger.info(f"✅ SUCCESS: Hedge open {trade_id}. SpotID: {spot_leg.order_id} | FuturesID: {futures_leg.order_id}")
            return ExecutionResult(True, trade_id, self.mode, position, None)

        error = self._classify_failure(trade_id, spot_res, futures_res, spot_ok, futures_ok)
        position.status = PositionStatus.FAILED
        await self.ledger.record_failed(position, error)
        await self.state.record_failure()

        if isinstance(error, PartialFillError):
            self.logger.critical(f"🚨 PARTIAL FILL {trade_id}: {error}. Manual intervention required, no automatic unwind.")
            self._publish('manual_intervention', error, trade_id=trade_id, instrument=opp.instrument)
        else:
            self.logger.warning(f"⚠️ FAILED: Both legs rejected for {trade_id}. No exposure. {error}")
        self._publish('trade_failed', error, trade_id=trade_id, instrument=opp.instrument)
        await self._audit(position, 'OPEN', 'FAILED', str(error), opp.net_spread_pct)
        await self._drain_pending_late(trade_id)
        return ExecutionResult(False, trade_id, self.mode, None, error)

    @staticmethod
    def _classify_failure(trade_id: str, spot_res, futures_res, spot_ok: bool, futures_ok: bool) -> HedgeArbError:
        if spot_ok != futures_ok:
            filled_leg, failed_leg = ('spot', 'futures') if spot_ok else ('futures', 'spot')
            filled_order, cause = (spot_res, futures_res) if spot_ok else (futures_res, spot_res)
            return PartialFillError(
                f"{failed_leg} leg failed after {filled_leg} leg filled: {cause}",
                trade_id=trade_id, failed_leg=failed_leg, filled_leg=filled_leg,
                filled_order_id=filled_order.get('id'),
                cause=getattr(cause, 'code', type(cause).__name__),
            )
        errors = {'spot': spot_res, 'futures': futures_res}
        detail = "; ".join(f"{leg}: {err}" for leg, err in errors.items())
        codes = {leg: getattr(err, 'code', type(err).__name__) for leg, err in errors.items()}
        if all(isinstance(err, VenueTimeout) for err in errors.values()):
            return VenueTimeout(f"Both legs timed out ({detail})", trade_id=trade_id, failed_legs=['spot', 'futures'])
        return VenueError(f"Both legs failed ({detail})", trade_id=trade_id, failed_legs=['spot', 'futures'], leg_codes=codes)

    async def _book_success(self, position: Position, opp: OpportunitySnapshot):
        size = position.position_size_usd
        await self.ledger.open_position(position)
        await self.state.record_success(volume_usd=size, estimated_profit=size * opp.net_spread_pct / 100, reserved=True)
        self._publish('trade_opened', trade_id=position.trade_id, instrument=position.instrument,
                      spot_venue=position.spot_leg.venue, futures_venue=position.futures_leg.venue,
                      size_usd=size, net_spread_pct=round(opp.net_spread_pct, 4), mode=self.mode)
        await self._audit(position, 'OPEN', 'SUCCESS', '', opp.net_spread_pct)

    # --- late fills -----------------------------------------------------------

    def _on_late_fill(self, trade_id: str, leg: str, order: Dict[str, Any]):
        task = asyncio.ensure_future(self._reconcile_late_fill(trade_id, leg, order))
        self._late_tasks.add(task)
        task.add_done_callback(self._late_tasks.discard)

    async def _reconcile_late_fill(self, trade_id: str, leg: str, order: Dict[str, Any]):
        self.logger.critical(f"🚨 LATE FILL: {trade_id} {leg} leg filled after its timeout (order {order.get('id')})")
        if trade_id in self._pending_late:
            self._pending_late[trade_id][leg] = order
            return
        if trade_id not in self.ledger.failed:
            self.logger.error(f"❌ {trade_id}: no failed record to reconcile the late {leg} fill against")
            return
        await self._apply_late_fill(trade_id, leg, order)

    async def _drain_pending_late(self, trade_id: str):
        for leg, order in self._pending_late.pop(trade_id, {}).items():
            await self._apply_late_fill(trade_id, leg, order)

    async def _apply_late_fill(self, trade_id: str, leg: str, order: Dict[str, Any]):
        """The venue's fill is authoritative over our timeout-based FAILED verdict."""
        position = self.ledger.failed[trade_id]
        leg_obj = position.spot_leg if leg == 'spot' else position.futures_leg
        leg_obj.filled = True
        leg_obj.order_id = order.get('id')
        leg_obj.price = fill_price(order, leg_obj.price)

        if position.spot_leg.filled and position.futures_leg.filled:
            await self.ledger.promote_failed(trade_id)
            size = position.position_size_usd
            await self.state.promote_failure(size, estimated_profit=size * position.spread_at_open / 100)
            self.logger.warning(f"♻️ {trade_id} reconciled: both legs filled, position now OPEN")
            self._publish('late_fill_reconciled', trade_id=trade_id, instrument=position.instrument, leg=leg,
                          order_id=leg_obj.order_id)
            await self._audit(position, 'LATE_FILL', 'OPEN', f"{leg} leg filled late", position.spread_at_open)
        else:
            position.needs_attention = True
            position.attention_reason = f"{leg} leg filled late, other leg unfilled"
            await self.ledger.persist('failed_trades')
            self._publish('late_fill', trade_id=trade_id, instrument=position.instrument, leg=leg,
                          venue=leg_obj.venue, order_id=leg_obj.order_id, amount=leg_obj.amount,
                          action='manual_intervention')
            await self._audit(position, 'LATE_FILL', 'SINGLE_LEG', f"{leg} leg filled late", position.spread_at_open)

    # --- helpers --------------------------------------------------------------

    def _publish(self, event_type: str, error: Optional[HedgeArbError] = None, **fields):
        if self.notifier is None:
            return
        event = {'type': event_type}
        if error is not None:
            event.update(error.to_dict())
        event.update(fields)
        self.notifier.publish(event)

    async def _audit(self, position: Position, event: str, outcome: str, detail: str, spread: float):
        if self.audit_log is None:
            return
        await self.audit_log.log_trade([
            datetime.now(timezone.utc).isoformat(), position.trade_id, event, position.instrument,
            position.spot_leg.venue, position.futures_leg.venue, f"{position.amount:.8f}",
            f"{position.spot_leg.price:.8f}", f"{position.futures_leg.price:.8f}",
            f"{position.position_size_usd:.2f}", f"{spread:.4f}", outcome, detail,
        ])


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
