"""
REST activity poller.

Every few seconds fetches the recent activity of each donor proxy wallet and
each of our own agent wallets, hands any event newer than the wallet's
cursor to the engine oldest-first, and only then moves the cursor. A failed
fetch leaves the cursor alone so the next cycle retries the same window.
"""

import asyncio
from typing import Awaitable, Callable, Optional

from config import settings
from models.trade import IntentSource, TradeIntent
from services.event_normalizer import normalize_activity
from services.polymarket import PolymarketClient
from services.trade_coordinator import TradeCoordinator
from services.wallet_classifier import WalletClassifier
from utils.logger import get_logger
from utils.retry import is_transient_error, sleep_or_stop
from utils.utcnow import epoch_seconds

logger = get_logger("activity_poller")

Dispatch = Callable[[TradeIntent], Awaitable[object]]


def _record_ts(record: dict) -> int:
    try:
        ts = int(float(record.get("timestamp") or 0))
    except (TypeError, ValueError):
        return 0
    return ts // 1000 if ts > 10**12 else ts


def _is_trade_record(record: dict) -> bool:
    kind = str(record.get("type") or "TRADE").upper()
    return kind == "TRADE"


class ActivityPoller:
    def __init__(
        self,
        client: PolymarketClient,
        classifier: WalletClassifier,
        coordinator: TradeCoordinator,
        dispatch: Dispatch,
        interval: Optional[float] = None,
        clock: Callable[[], int] = epoch_seconds,
    ):
        self.client = client
        self.classifier = classifier
        self.coordinator = coordinator
        self.dispatch = dispatch
        self.interval = settings.POLL_INTERVAL_SECONDS if interval is None else interval
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._stats = {"cycles": 0, "events": 0, "errors": 0}

    def poll_targets(self) -> list[str]:
        roster = self.classifier.roster
        targets: list[str] = []
        for wallet in list(roster.proxy_wallets) + list(roster.self_wallets):
            if wallet not in targets:
                targets.append(wallet)
        return targets

    async def poll_wallet(self, wallet: str) -> int:
        """Process one wallet's new activity. Returns the number of events handled."""
        since = self.coordinator.cursor_for(wallet, self._clock())
        try:
            records = await self.client.get_wallet_activity(wallet)
        except Exception as e:
            self._stats["errors"] += 1
            log = logger.warning if is_transient_error(e) else logger.error
            log(
                "Activity fetch failed",
                wallet=wallet,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
            return 0

        fresh = sorted(
            (r for r in records if _record_ts(r) > since and _is_trade_record(r)),
            key=_record_ts,
        )
        handled = 0
        newest = since
        for record in fresh:
            ts = _record_ts(record)
            intent = normalize_activity(wallet, record, IntentSource.POLL)
            if intent is None:
                newest = max(newest, ts)
                continue
            try:
                await self.dispatch(intent)
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(
                    "Dispatch failed; cursor held before this event",
                    wallet=wallet,
                    tx_hash=intent.tx_hash,
                    error_type=type(e).__name__,
                    error=str(e) or repr(e),
                )
                # Everything strictly older than this event has been handled.
                self.coordinator.advance_cursor(wallet, min(newest, ts - 1))
                return handled
            handled += 1
            newest = max(newest, ts)

        self.coordinator.advance_cursor(wallet, newest)
        self._stats["events"] += handled
        return handled

    async def poll_once(self) -> int:
        total = 0
        for wallet in self.poll_targets():
            total += await self.poll_wallet(wallet)
        self._stats["cycles"] += 1
        return total

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Poll cycle failed", error=str(e), exc_info=True)
            if await sleep_or_stop(self._stop_event, self.interval):
                break

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Activity poller started", wallets=len(self.poll_targets()), interval=self.interval)

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
            "targets": len(self.poll_targets()),
            "stats": dict(self._stats),
        }
