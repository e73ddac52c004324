# hedgearb/engine.py
import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .balance_cache import BalanceCache
from .detector import OpportunityDetector
from .exchange import ExchangeVenue
from .execution import ExecutionService
from .lifetime import SpreadLifetimeTracker
from .market_engine import MarketEngine
from .models import CloseResult, ExecutionResult, OpportunitySnapshot
from .notifier import LogSink, Notifier, TelegramSink
from .position_manager import PositionLedger
from .price_feed import PriceFeedAggregator
from .risk_engine import RiskEngine
from .state import TradingState
from .store import JsonStore


def build_notifier(config: dict, logger: Optional[logging.Logger] = None) -> Notifier:
    sinks = [LogSink(logger)]
    tg = config['notifications'].get('telegram') or {}
    if tg.get('enabled') and tg.get('token') and tg.get('chat_id'):
        sinks.append(TelegramSink(tg['token'], str(tg['chat_id'])))
    return Notifier(sinks, logger)


class HedgeEngine:
    """
    Wires the pipeline together and exposes the command surface used by the
    CLI (or any other front end): scan, execute, emergency stop, stats, close.
    """
    def __init__(self, config: dict, venues: Optional[Dict[str, ExchangeVenue]] = None, store=None,
                 notifier: Optional[Notifier] = None, audit_log=None, logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.logger = logger or logging.getLogger("hedgearb")
        self.clock = clock

        self.market: Optional[MarketEngine] = None
        if venues is None:
            self.market = MarketEngine(config, self.logger)
            venues = self.market.venues
        self.venues = venues

        scanner = config['scanner']
        self.instruments: List[str] = list(scanner['instruments'])
        self.auto_execute = config['system']['auto_execute']
        self.min_lifetime = scanner['min_lifetime_seconds']

        self.state = TradingState(config, self.logger, clock)
        self.balances = BalanceCache(self.venues, config['balance']['cache_ttl_seconds'], self.logger, clock)
        self.notifier = notifier or build_notifier(config, self.logger)
        self.store = store or JsonStore(config['storage']['directory'], self.logger)
        self.audit_log = audit_log
        self.ledger = PositionLedger(config, self.venues, self.store, self.state, self.notifier,
                                     audit_log, self.logger, clock)
        self.risk = RiskEngine(config, self.state, self.venues, self.balances, self.logger)
        self.executor = ExecutionService(config, self.venues, self.risk, self.state, self.ledger,
                                         self.notifier, audit_log, self.logger, clock)
        self.feed = PriceFeedAggregator(self.venues, self.instruments, config, self.logger, clock)
        self.detector = OpportunityDetector(config, clock)
        self.tracker = SpreadLifetimeTracker(100, clock)

        self.history: Deque[OpportunitySnapshot] = deque(maxlen=scanner['history_size'])
        self.latest: List[OpportunitySnapshot] = []
        self.cycles = 0
        self.skipped_cycles = 0
        self.last_cycle_seconds = 0.0
        self.running = False
        self._cycle_in_progress = False
        self._scan_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None

    # --- lifecycle --------------------------------------------------------------

    async def start(self) -> bool:
        """
        Runs venue diagnostics (when venues were not injected), restores
        persisted positions and starts the position monitor.
        """
        healthy = True
        if self.market is not None:
            healthy = await self.market.initialize()
        if self.audit_log is not None:
            await self.audit_log.start()
        await self.ledger.load()
        self._monitor_task = asyncio.create_task(self.ledger.run_loop())

        mode = 'SIMULATION (safe)' if self.executor.simulation else 'LIVE (real money)'
        self.logger.info(
            f"⚙️ Mode: {mode} | Auto execute: {self.auto_execute} | "
            f"Min spread: {self.config['risk']['min_spread_pct']}% | "
            f"Position size: ${self.executor.position_size} | Venues: {', '.join(self.venues) or '-'} | "
            f"Active positions: {len(self.ledger.positions)}"
        )
        return healthy

    async def run(self):
        """
        Periodic scan timer. A tick whose previous cycle is still running is
        dropped rather than queued.
        """
        self.running = True
        interval = self.config['scanner']['interval_seconds']
        while self.running:
            if self._scan_task is None or self._scan_task.done():
                self._scan_task = asyncio.create_task(self._guarded_cycle())
            else:
                self.skipped_cycles += 1
                self.logger.debug("⏭️ Previous scan still running - tick skipped")
            await asyncio.sleep(interval)

    async def _guarded_cycle(self):
        try:
            await self.scan_cycle()
        except Exception as e:
            self.logger.error(f"❌ Scan cycle failed: {e}")

    async def shutdown(self):
        self.running = False
        self.ledger.stop()
        for task in (self._scan_task, self._monitor_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await self.notifier.close()
        if self.audit_log is not None:
            await self.audit_log.stop()
        if self.market is not None:
            await self.market.shutdown()

    # --- scanning ---------------------------------------------------------------

    async def scan_cycle(self) -> Optional[List[OpportunitySnapshot]]:
        if self._cycle_in_progress:
            self.skipped_cycles += 1
            return None
        self._cycle_in_progress = True
        try:
            started = time.perf_counter()
            quotes = await self.feed.fetch_all()
            opportunities = self.tracker.update(self.detector.detect(quotes))

            self.latest = opportunities
            self.history.extend(opportunities)
            self.cycles += 1
            self.last_cycle_seconds = time.perf_counter() - started

            for opp in opportunities:
                if opp.lifetime_seconds == 0:
                    self.notifier.publish({'type': 'opportunity', **_alert_fields(opp)})

            if opportunities:
                best = opportunities[0]
                self.logger.info(
                    f"✅ Scan: {len(opportunities)} opps in {self.last_cycle_seconds:.2f}s | "
                    f"Best: {best.instrument} {best.net_spread_pct:.3f}% (⏱{best.lifetime_seconds:.1f}s)"
                )
            else:
                self.logger.debug(f"Scan: no opportunities in {self.last_cycle_seconds:.2f}s")

            if self.auto_execute and opportunities:
                await self._auto_execute(opportunities)
            return opportunities
        finally:
            self._cycle_in_progress = False

    async def _auto_execute(self, opportunities: List[OpportunitySnapshot]) -> Optional[ExecutionResult]:
        """Executes at most one opportunity per cycle, skipping instruments already held."""
        held = {p.instrument for p in self.ledger.positions.values()}
        for opp in opportunities:
            if opp.instrument in held or opp.lifetime_seconds < self.min_lifetime:
                continue
            return await self.execute_hedged_trade(opp)
        return None

    # --- command surface ----------------------------------------------------------

    async def execute_hedged_trade(self, opportunity: OpportunitySnapshot) -> ExecutionResult:
        return await self.executor.execute(opportunity)

    async def enable_emergency_stop(self):
        await self.state.enable_emergency_stop()
        self.notifier.publish({'type': 'emergency_stop', 'active': True})

    async def disable_emergency_stop(self):
        await self.state.disable_emergency_stop()
        self.notifier.publish({'type': 'emergency_stop', 'active': False})

    async def reset_failure_count(self):
        await self.state.reset_failure_count()

    async def close_position(self, trade_id: str) -> CloseResult:
        return await self.ledger.close_position(trade_id, 'MANUAL')

    def positions(self) -> List[dict]:
        return self.ledger.summary()

    def lifetime_stats(self) -> Dict[str, Any]:
        return self.tracker.stats()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.state.snapshot(),
            'active_positions': len(self.ledger.positions),
            'closed_positions': len(self.ledger.closed),
            'failed_trade_records': len(self.ledger.failed),
            'positions_needing_attention': sum(1 for p in self.ledger.positions.values() if p.needs_attention),
            'scan_cycles': self.cycles,
            'skipped_cycles': self.skipped_cycles,
            'active_spreads': self.tracker.active_count,
            'config': {
                'simulation_mode': self.executor.simulation,
                'auto_execute': self.auto_execute,
                'min_spread_pct': self.config['risk']['min_spread_pct'],
                'position_size_usd': self.executor.position_size,
            },
        }


def _alert_fields(opp: OpportunitySnapshot) -> Dict[str, Any]:
    return {
        'instrument': opp.instrument,
        'buy': f"{opp.buy_venue} @ {opp.buy_price}",
        'short': f"{opp.sell_venue} @ {opp.sell_price}",
        'gross_pct': round(opp.gross_spread_pct, 3),
        'net_pct': round(opp.net_spread_pct, 3),
        'funding_rate': opp.funding_rate,
    }
