# hedgearb/models.py
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import time

from .errors import ValidationError

SpreadIdentity = Tuple[str, str, str]


class MarketType(Enum):
    SPOT = "spot"
    FUTURES = "futures"


class PositionStatus(Enum):
    """
    Lifecycle states of a hedge position.
    """
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


@dataclass(slots=True)
class PriceQuote:
    """
    One venue's price for one instrument and market, produced per scan cycle.
    funding_rate is the raw per-period fraction and only set on futures quotes.
    """
    venue: str
    instrument: str
    market: MarketType
    price: float
    funding_rate: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def age(self) -> float:
        return time.time() - self.timestamp


@dataclass(slots=True)
class InstrumentQuotes:
    spot: List[PriceQuote] = field(default_factory=list)
    futures: List[PriceQuote] = field(default_factory=list)


@dataclass(slots=True)
class OpportunitySnapshot:
    """
    Stateless output of one detection cycle: buy spot on buy_venue, short
    futures on sell_venue.
    """
    instrument: str
    buy_venue: str
    buy_price: float
    sell_venue: str
    sell_price: float
    gross_spread_pct: float
    cost_pct: float
    net_spread_pct: float
    funding_rate: float = 0.0
    lifetime_seconds: float = 0.0
    detected_at: float = field(default_factory=time.time)

    @property
    def identity(self) -> SpreadIdentity:
        return (self.instrument, self.buy_venue, self.sell_venue)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SpreadRecord:
    identity: SpreadIdentity
    spread_at_first_seen: float
    lifetime_seconds: float
    ended_at: float


@dataclass(slots=True)
class Leg:
    venue: str
    price: float
    amount: float
    order_id: Optional[str] = None
    filled: bool = False
    closed: bool = False
    close_order_id: Optional[str] = None
    close_price: Optional[float] = None


@dataclass(slots=True)
class Position:
    """
    Paired spot-long / futures-short exposure. Owned by the PositionLedger,
    which is the only writer of status and close fields.
    """
    trade_id: str
    instrument: str
    spot_leg: Leg
    futures_leg: Leg
    position_size_usd: float
    spread_at_open: float
    funding_rate_at_open: float
    open_time: float
    status: PositionStatus = PositionStatus.OPEN
    simulated: bool = False
    needs_attention: bool = False
    attention_reason: Optional[str] = None
    close_time: Optional[float] = None
    close_reason: Optional[str] = None

    def __post_init__(self):
        if self.spot_leg.venue == self.futures_leg.venue:
            raise ValidationError(
                f"Position {self.trade_id} has both legs on {self.spot_leg.venue}",
                code="SAME_VENUE_LEGS", trade_id=self.trade_id, venue=self.spot_leg.venue,
            )

    @property
    def amount(self) -> float:
        return self.spot_leg.amount

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        data = dict(data)
        data["spot_leg"] = Leg(**data["spot_leg"])
        data["futures_leg"] = Leg(**data["futures_leg"])
        data["status"] = PositionStatus(data.get("status", "OPEN"))
        return cls(**data)


@dataclass(slots=True)
class PnLBreakdown:
    spot_pnl: float
    futures_pnl: float
    unrealized_pnl: float
    closing_cost: float
    hours_held: float
    funding_periods: int
    funding_cost: float
    net_pnl: float
    net_pnl_pct: float


@dataclass(slots=True)
class CloseDecision:
    should_close: bool
    reason: str


@dataclass(slots=True)
class CachedBalance:
    venue: str
    market: MarketType
    amount_usd: float
    fetched_at: float

    def age(self, now: float) -> float:
        return now - self.fetched_at


@dataclass(slots=True)
class ExecutionAuthorization:
    opportunity: OpportunitySnapshot
    position_size_usd: float
    checks_passed: List[str]
    authorized_at: float = field(default_factory=time.time)


@dataclass(slots=True)
class ExecutionResult:
    success: bool
    trade_id: str
    mode: str
    position: Optional[Position] = None
    error: Optional[Exception] = None
    execution_latency_ms: float = 0.0


@dataclass(slots=True)
class CloseResult:
    success: bool
    trade_id: str
    position: Optional[Position] = None
    error: Optional[Exception] = None
