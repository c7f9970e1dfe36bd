import asyncio
from typing import Awaitable, Callable, Optional, Sequence

from config import settings
from utils.logger import get_logger

logger = get_logger("balance_sync")


class BalanceSyncScheduler:
    """Debounced balance re-sync after ledger activity.

    Each ``schedule()`` call cancels whatever is pending and arms one run per
    configured delay (by default 4s and 15s), so a burst of trades produces a
    single pair of syncs after the burst settles.
    """

    def __init__(
        self,
        run: Callable[[], Awaitable[None]],
        delays: Optional[Sequence[float]] = None,
    ):
        self._run = run
        self._delays = tuple(settings.BALANCE_SYNC_DELAYS_SECONDS if delays is None else delays)
        self._pending: list[asyncio.Task] = []
        self.runs = 0

    @property
    def pending(self) -> int:
        return sum(1 for task in self._pending if not task.done())

    def schedule(self) -> None:
        self.cancel()
        self._pending = [asyncio.create_task(self._delayed(delay)) for delay in self._delays]

    def cancel(self) -> None:
        for task in self._pending:
            if not task.done():
                task.cancel()
        self._pending = []

    async def _delayed(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._run()
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Balance sync failed", error_type=type(e).__name__, error=str(e))
