# hedgearb/lifetime.py
import time
from collections import deque
from dataclasses import replace
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .models import OpportunitySnapshot, SpreadIdentity, SpreadRecord


class SpreadLifetimeTracker:
    """
    Measures how long a (instrument, buy venue, sell venue) spread has stayed
    above the activation threshold. Persistence is sampled once per scan, so a
    single non-qualifying scan ends the spread; a reappearance starts from zero.
    """
    def __init__(self, history_capacity: int = 100, clock: Callable[[], float] = time.time):
        # identity -> (first_seen, net spread at first sight)
        self._live: Dict[SpreadIdentity, Tuple[float, float]] = {}
        self.history: Deque[SpreadRecord] = deque(maxlen=history_capacity)
        self.clock = clock

    @property
    def active_count(self) -> int:
        return len(self._live)

    def update(self, opportunities: List[OpportunitySnapshot], now: Optional[float] = None) -> List[OpportunitySnapshot]:
        now = self.clock() if now is None else now
        annotated = []
        seen = set()
        for opp in opportunities:
            key = opp.identity
            seen.add(key)
            if key not in self._live:
                self._live[key] = (now, opp.net_spread_pct)
                lifetime = 0.0
            else:
                lifetime = now - self._live[key][0]
            annotated.append(replace(opp, lifetime_seconds=lifetime))

        for key in [k for k in self._live if k not in seen]:
            self._finalize(key, now)
        return annotated

    def _finalize(self, key: SpreadIdentity, now: float):
        first_seen, spread = self._live.pop(key)
        self.history.append(SpreadRecord(
            identity=key,
            spread_at_first_seen=spread,
            lifetime_seconds=now - first_seen,
            ended_at=now,
        ))

    def stats(self) -> Dict[str, Any]:
        if not self.history:
            return {'count': 0, 'avg_lifetime': 0.0, 'min_lifetime': 0.0, 'max_lifetime': 0.0, 'recent': []}
        lifetimes = [r.lifetime_seconds for r in self.history]
        return {
            'count': len(lifetimes),
            'avg_lifetime': sum(lifetimes) / len(lifetimes),
            'min_lifetime': min(lifetimes),
            'max_lifetime': max(lifetimes),
            'recent': list(reversed(list(self.history)[-10:])),
        }
