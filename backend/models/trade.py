"""In-memory domain types that flow between the ingestion sources,
the coordinator and the lifecycle manager."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class WalletRole(str, Enum):
    SELF = "self"
    DONOR = "donor"


class OrderAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OutcomeSide(str, Enum):
    YES = "YES"
    NO = "NO"


class Direction(str, Enum):
    UP = "UP"
    DOWN = "DOWN"


class TradeStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class IntentSource(str, Enum):
    POLL = "poll"
    STREAM = "stream"
    CHAIN = "chain"


class TradeEventKind(str, Enum):
    OPEN = "trade:open"
    CLOSE = "trade:close"


@dataclass(frozen=True)
class TradeIntent:
    """A venue activity record normalized into a BUY/SELL intent."""

    wallet: str
    action: OrderAction
    condition_id: str
    outcome_index: int
    price: float
    activity_ts: int  # seconds, as reported by the venue
    opened_at: datetime
    tx_hash: str
    side: OutcomeSide
    direction: Direction
    asset: str
    title: str
    slug: str
    market_url: str
    icon: str
    market_end: datetime
    token_id: Optional[str] = None
    source: IntentSource = IntentSource.POLL


@dataclass
class ExecutionResult:
    """Outcome of a single real order submission."""

    success: bool
    real_price: Optional[float] = None
    real_size: Optional[float] = None  # USDC notional
    shares: Optional[float] = None
    order_id: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def failed(cls, error: str) -> "ExecutionResult":
        return cls(success=False, error=error)

    @classmethod
    def skip(cls, reason: str) -> "ExecutionResult":
        return cls(success=False, error=reason, skipped=True)


@dataclass
class LifecycleOutcome:
    """What a single intent did to one agent's ledger."""

    agent_id: str
    action: str  # opened, closed, skipped
    trade_ids: list[str] = field(default_factory=list)
    reason: Optional[str] = None
