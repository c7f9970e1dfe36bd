from .market import Market
from .trade import (
    Direction,
    ExecutionResult,
    IntentSource,
    LifecycleOutcome,
    OrderAction,
    OutcomeSide,
    TradeEventKind,
    TradeIntent,
    TradeStatus,
    WalletRole,
)

__all__ = [
    "Market",
    "Direction",
    "ExecutionResult",
    "IntentSource",
    "LifecycleOutcome",
    "OrderAction",
    "OutcomeSide",
    "TradeEventKind",
    "TradeIntent",
    "TradeStatus",
    "WalletRole",
]
