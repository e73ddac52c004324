# hedgearb/state.py
import asyncio
import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional


class TradingState:
    """
    Single owner of the counters that several trade completions can race on:
    daily volume, consecutive failures, emergency stop, and the trade stats.
    Writers go through the lock; reads are plain attribute access.
    """
    def __init__(self, config: dict, logger: Optional[logging.Logger] = None, clock: Callable[[], float] = time.time):
        self.max_failures = config['risk']['max_consecutive_failures']
        self.logger = logger or logging.getLogger("hedgearb.state")
        self.clock = clock
        self._lock = asyncio.Lock()

        self.daily_volume_usd = 0.0
        # volume and slots held by trades between preflight and settlement
        self.reserved_volume_usd = 0.0
        self.trades_in_flight = 0
        self.consecutive_failures = 0
        self.emergency_stop = False
        self._volume_day: date = self._today()

        self.total_trades = 0
        self.successful_trades = 0
        self.failed_trades = 0
        self.rejected_opportunities = 0
        self.total_estimated_profit = 0.0

    def _today(self) -> date:
        return datetime.fromtimestamp(self.clock()).date()

    def roll_day(self):
        """Resets daily volume on the first access after local midnight."""
        today = self._today()
        if today != self._volume_day:
            self._volume_day = today
            if self.daily_volume_usd:
                self.logger.info(f"📊 Daily counters reset (was ${self.daily_volume_usd:,.2f})")
            self.daily_volume_usd = 0.0

    def current_daily_volume(self) -> float:
        self.roll_day()
        return self.daily_volume_usd

    async def reserve_trade(self, amount_usd: float, volume_cap: float) -> Optional[str]:
        """
        Atomic check-and-hold for a trade about to be sent. Counts volume and
        failure slots of trades still in flight, so concurrent callers cannot
        both squeeze under the daily cap or the failure ceiling.
        Returns the reason code on refusal, None when the hold was taken.
        """
        async with self._lock:
            self.roll_day()
            if self.consecutive_failures + self.trades_in_flight >= self.max_failures:
                return "FAILURE_CEILING"
            if self.daily_volume_usd + self.reserved_volume_usd + amount_usd > volume_cap:
                return "DAILY_VOLUME_CAP"
            self.reserved_volume_usd += amount_usd
            self.trades_in_flight += 1
            return None

    async def release_trade(self, amount_usd: float):
        async with self._lock:
            self._drop_hold(amount_usd)

    def _drop_hold(self, amount_usd: float):
        self.reserved_volume_usd = max(0.0, self.reserved_volume_usd - amount_usd)
        self.trades_in_flight = max(0, self.trades_in_flight - 1)

    async def record_success(self, volume_usd: float = 0.0, estimated_profit: float = 0.0, reserved: bool = False):
        """reserved=True settles the hold taken by reserve_trade for this volume."""
        async with self._lock:
            self.roll_day()
            if reserved:
                self._drop_hold(volume_usd)
            self.total_trades += 1
            self.successful_trades += 1
            self.consecutive_failures = 0
            self.daily_volume_usd += volume_usd
            self.total_estimated_profit += estimated_profit

    async def promote_failure(self, volume_usd: float, estimated_profit: float = 0.0):
        """A trade booked as failed turned out filled on both legs."""
        async with self._lock:
            self.roll_day()
            self.failed_trades = max(0, self.failed_trades - 1)
            self.successful_trades += 1
            self.consecutive_failures = 0
            self.daily_volume_usd += volume_usd
            self.total_estimated_profit += estimated_profit
        self.logger.info(f"🔄 Failed trade promoted to success (+${volume_usd:,.2f} volume)")

    async def record_failure(self, count_trade: bool = True) -> int:
        """count_trade=False for venue failures outside an opening trade, e.g. an unwind."""
        async with self._lock:
            if count_trade:
                self.total_trades += 1
                self.failed_trades += 1
            self.consecutive_failures += 1
            if self.consecutive_failures >= self.max_failures:
                self.logger.critical(
                    f"⛔ FAILURE CEILING REACHED: {self.consecutive_failures} consecutive execution failures. "
                    f"New trades blocked until the counter is reset."
                )
            return self.consecutive_failures

    async def record_rejection(self):
        async with self._lock:
            self.rejected_opportunities += 1

    async def enable_emergency_stop(self):
        async with self._lock:
            self.emergency_stop = True
        self.logger.critical("⛔ EMERGENCY STOP ACTIVATED - All trading suspended")

    async def disable_emergency_stop(self):
        async with self._lock:
            self.emergency_stop = False
        self.logger.warning("✅ EMERGENCY STOP DEACTIVATED - Trading resumed")

    async def reset_failure_count(self):
        async with self._lock:
            self.consecutive_failures = 0
        self.logger.info("🔄 Failed order counter reset")

    def snapshot(self) -> Dict[str, Any]:
        return {
            'total_trades': self.total_trades,
            'successful_trades': self.successful_trades,
            'failed_trades': self.failed_trades,
            'rejected_opportunities': self.rejected_opportunities,
            'total_estimated_profit': self.total_estimated_profit,
            'daily_volume_usd': self.current_daily_volume(),
            'reserved_volume_usd': self.reserved_volume_usd,
            'trades_in_flight': self.trades_in_flight,
            'consecutive_failures': self.consecutive_failures,
            'emergency_stop': self.emergency_stop,
        }
