"""Settles open trades once their market resolves."""

import asyncio
from collections import defaultdict
from typing import Awaitable, Callable, Optional

from config import settings
from models import Market
from services.ledger_store import LedgerStore
from services.polymarket import PolymarketClient
from utils.logger import get_logger
from utils.retry import sleep_or_stop

logger = get_logger("resolution_poller")

ResolveSubmit = Callable[[str, int], Awaitable[object]]


def find_winner_index(market: Optional[Market]) -> Optional[int]:
    """Winning outcome index of a closed market, or None while unresolved."""
    if market is None:
        return None
    return market.winner_index()


class ResolutionPoller:
    """Checks every market with open trades and hands winners to the engine.

    A market counts as resolved when Gamma reports it closed and one outcome
    price has reached 0.99. Lookup failures are logged and the market is
    retried on the next cycle.
    """

    def __init__(
        self,
        client: PolymarketClient,
        store: LedgerStore,
        submit_resolution: ResolveSubmit,
        interval: Optional[float] = None,
    ):
        self.client = client
        self.store = store
        self.submit_resolution = submit_resolution
        self.interval = settings.RESOLUTION_POLL_INTERVAL_SECONDS if interval is None else interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stats = {"cycles": 0, "markets_checked": 0, "resolved": 0, "errors": 0}

    async def open_markets(self) -> dict[str, int]:
        """Condition id -> number of open trades, skipping trades with no market id."""
        counts: dict[str, int] = defaultdict(int)
        for trade in await self.store.get_all_open_trades():
            if trade.condition_id:
                counts[trade.condition_id] += 1
        return dict(counts)

    async def check_once(self) -> list[str]:
        """Run one resolution pass. Returns the condition ids submitted."""
        resolved: list[str] = []
        markets = await self.open_markets()
        for condition_id in markets:
            self._stats["markets_checked"] += 1
            try:
                market = await self.client.get_market_by_condition_id(condition_id)
            except Exception as e:
                self._stats["errors"] += 1
                logger.warning(
                    "Market lookup failed",
                    condition_id=condition_id,
                    error_type=type(e).__name__,
                    error=str(e) or repr(e),
                )
                continue
            winner = find_winner_index(market)
            if winner is None:
                continue
            logger.info(
                "Market resolved upstream",
                condition_id=condition_id,
                winner_index=winner,
                open_trades=markets[condition_id],
            )
            try:
                await self.submit_resolution(condition_id, winner)
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Resolution submit failed", condition_id=condition_id, error=str(e))
                continue
            self._stats["resolved"] += 1
            resolved.append(condition_id)
        self._stats["cycles"] += 1
        return resolved

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Resolution cycle failed", error=str(e), exc_info=True)
            if await sleep_or_stop(self._stop_event, self.interval):
                break

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Resolution poller started", interval=self.interval)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def get_status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "stats": dict(self._stats),
        }
