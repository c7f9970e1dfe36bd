import asyncio
from typing import Awaitable, Callable, Optional, Set

from models.trade import TradeEventKind
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("event_bus")

StatsProvider = Callable[[], Awaitable[list]]


class EventBus:
    """Fan-out of trade and stats notifications to in-process subscribers.

    Delivery is fire-and-forget: each subscriber owns a bounded queue and a
    subscriber that falls behind loses messages rather than blocking the
    ledger writer. With no subscribers every push is a no-op.
    """

    def __init__(self, stats_provider: Optional[StatsProvider] = None, max_queue: int = 256):
        self._subscribers: Set[asyncio.Queue] = set()
        self._stats_provider = stats_provider
        self._max_queue = max_queue
        self.dropped = 0

    def set_stats_provider(self, provider: StatsProvider) -> None:
        self._stats_provider = provider

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, message: dict) -> None:
        """Send message to all subscribers"""
        if not self._subscribers:
            return
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                self.dropped += 1

    def push_trade_event(self, kind: TradeEventKind, trade: dict) -> None:
        self.broadcast(
            {
                "type": kind.value,
                "data": trade,
                "timestamp": utcnow().isoformat(),
            }
        )

    async def push_stats_update(self) -> None:
        if not self._subscribers or self._stats_provider is None:
            return
        try:
            stats = await self._stats_provider()
        except Exception as e:
            logger.warning("Stats snapshot for subscribers failed", error=str(e))
            return
        self.broadcast(
            {
                "type": "stats:update",
                "data": stats,
                "timestamp": utcnow().isoformat(),
            }
        )
