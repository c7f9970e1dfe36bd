"""
Copy engine: wires ingestion sources to the trade lifecycle.

Every ledger mutation happens inside one consumer task that drains a single
command queue. Producers (REST poller, activity stream, resolution poller,
real-order reconciliation, balance sync) enqueue a command and may await its
future; the poller always does so its cursor only moves past events that
were actually applied.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Optional

from config import DonorEntry, settings
from models.trade import ExecutionResult, LifecycleOutcome, TradeIntent, WalletRole
from services.activity_poller import ActivityPoller
from services.activity_stream import ActivityStream
from services.balance_sync import BalanceSyncScheduler
from services.event_bus import EventBus
from services.ledger_store import LedgerStore
from services.onchain_listener import OnChainListener
from services.order_executor import OrderExecutor, build_clients_from_settings
from services.polymarket import PolymarketClient
from services.resolution_poller import ResolutionPoller
from services.trade_coordinator import TradeCoordinator
from services.trade_lifecycle import TradeLifecycleManager
from services.wallet_classifier import WalletClassifier
from utils.logger import get_logger
from utils.retry import sleep_or_stop

logger = get_logger("copy_engine")


# ==================== COMMANDS ====================


def _new_future() -> asyncio.Future:
    return asyncio.get_running_loop().create_future()


@dataclass
class IntentCommand:
    intent: TradeIntent
    done: asyncio.Future = field(default_factory=_new_future)


@dataclass
class ResolveCommand:
    condition_id: str
    winner_index: int
    done: asyncio.Future = field(default_factory=_new_future)


@dataclass
class ReconcileCommand:
    trade_id: str
    result: ExecutionResult
    done: asyncio.Future = field(default_factory=_new_future)


@dataclass
class SnapshotCommand:
    reason: str
    exchange_balances: Optional[dict] = None
    done: asyncio.Future = field(default_factory=_new_future)


# ==================== ENGINE ====================


class CopyEngine:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        classifier: Optional[WalletClassifier] = None,
        coordinator: Optional[TradeCoordinator] = None,
        bus: Optional[EventBus] = None,
        executor: Optional[OrderExecutor] = None,
        client: Optional[PolymarketClient] = None,
        stream_enabled: Optional[bool] = None,
        onchain_enabled: Optional[bool] = None,
    ):
        self.store = store or LedgerStore()
        self.classifier = classifier or WalletClassifier(settings.DONORS, settings.AGENT_WALLETS)
        self.coordinator = coordinator or TradeCoordinator()
        self.bus = bus or EventBus()
        self.executor = executor if executor is not None else OrderExecutor(build_clients_from_settings())
        self.client = client or PolymarketClient()
        self._stream_enabled = settings.ACTIVITY_STREAM_ENABLED if stream_enabled is None else stream_enabled
        self._onchain_enabled = (
            settings.ONCHAIN_LISTENER_ENABLED if onchain_enabled is None else onchain_enabled
        )

        self.bus.set_stats_provider(self.store.get_all_agent_stats)
        self.balance_sync = BalanceSyncScheduler(self.sync_balances)
        self.lifecycle = TradeLifecycleManager(
            self.store,
            self.coordinator,
            self.bus,
            executor=self.executor,
            schedule_balance_sync=self.balance_sync.schedule,
            reconcile_sink=self.submit_reconcile,
        )
        self.poller = ActivityPoller(self.client, self.classifier, self.coordinator, self.submit_intent)
        self.stream = ActivityStream(self.classifier, self.coordinator, self.submit_intent)
        self.onchain = OnChainListener(self.classifier, self.coordinator, self.executor, self.client)
        self.resolver = ResolutionPoller(self.client, self.store, self.submit_resolution)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._background: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._exchange_balances: dict[str, float] = {}
        self._stats = {"commands": 0, "intents": 0, "dropped": 0, "failed": 0}

    # ==================== PRODUCERS ====================

    def submit(self, command) -> asyncio.Future:
        self._queue.put_nowait(command)
        return command.done

    async def submit_and_wait(self, command):
        return await self.submit(command)

    async def submit_intent(self, intent: TradeIntent) -> list[LifecycleOutcome]:
        return await self.submit_and_wait(IntentCommand(intent))

    async def submit_resolution(self, condition_id: str, winner_index: int) -> list[str]:
        return await self.submit_and_wait(ResolveCommand(condition_id, winner_index))

    async def submit_reconcile(self, trade_id: str, result: ExecutionResult) -> None:
        # Fire and forget: real-order tasks must not wait on the queue.
        self.submit(ReconcileCommand(trade_id, result))

    # ==================== CONSUMER ====================

    async def _consume(self) -> None:
        while True:
            command = await self._queue.get()
            try:
                result = await self._handle(command)
            except asyncio.CancelledError:
                if not command.done.done():
                    command.done.cancel()
                raise
            except Exception as e:
                self._stats["failed"] += 1
                logger.error(
                    "Command failed",
                    command=type(command).__name__,
                    error=str(e) or repr(e),
                    exc_info=True,
                )
                if not command.done.done():
                    command.done.set_exception(e)
            else:
                if not command.done.done():
                    command.done.set_result(result)
            finally:
                self._stats["commands"] += 1
                self._queue.task_done()

    async def _handle(self, command):
        if isinstance(command, IntentCommand):
            return await self.handle_intent(command.intent)
        if isinstance(command, ResolveCommand):
            return await self.lifecycle.resolve_market(command.condition_id, command.winner_index)
        if isinstance(command, ReconcileCommand):
            adjustment = await self.lifecycle.reconcile(command.trade_id, command.result)
            if adjustment:
                await self.bus.push_stats_update()
            return adjustment
        if isinstance(command, SnapshotCommand):
            if command.exchange_balances is not None:
                self._exchange_balances = dict(command.exchange_balances)
            balances = await self.store.record_equity_snapshot(command.reason)
            await self.bus.push_stats_update()
            return balances
        raise TypeError(f"Unknown command: {type(command).__name__}")

    async def handle_intent(self, intent: TradeIntent) -> list[LifecycleOutcome]:
        """Route one intent to the agents it concerns."""
        self._stats["intents"] += 1
        role = self.classifier.classify(intent.wallet)
        if role == WalletRole.SELF:
            agent_id = self.classifier.agent_for_self(intent.wallet)
            return [await self.lifecycle.apply(agent_id, intent, is_self=True)]
        if role == WalletRole.DONOR:
            outcomes = []
            for agent_id in self.classifier.agents_for_donor(intent.wallet):
                outcomes.append(
                    await self.lifecycle.apply(agent_id, intent, donor_wallet=intent.wallet)
                )
            return outcomes
        self._stats["dropped"] += 1
        logger.debug("Intent from unknown wallet dropped", wallet=intent.wallet)
        return []

    # ==================== BALANCES / EQUITY ====================

    async def sync_balances(self) -> None:
        """Fetch exchange collateral off the queue, then snapshot inside it."""
        balances = await self.executor.get_collateral_balances()
        if balances:
            logger.debug("Exchange collateral synced", balances=balances)
        await self.submit_and_wait(SnapshotCommand("sync", exchange_balances=balances))

    async def _every(self, interval: float, job) -> None:
        while not self._stop_event.is_set():
            if await sleep_or_stop(self._stop_event, interval):
                break
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Periodic job failed", job=job.__name__, error=str(e) or repr(e))

    async def _periodic_snapshot(self) -> None:
        await self.submit_and_wait(SnapshotCommand("periodic"))

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            logger.warning("Copy engine already running")
            return
        self._stop_event.clear()
        await self.store.initialize_agents(settings.agent_ids, settings.STARTING_BALANCE_USD)
        await self.store.record_equity_snapshot("start")

        self._consumer = asyncio.create_task(self._consume())
        self.poller.start()
        if self._stream_enabled:
            await self.stream.start()
        if self._onchain_enabled:
            await self.onchain.start()
        self.resolver.start()
        self._background = [
            asyncio.create_task(
                self._every(settings.EQUITY_SNAPSHOT_INTERVAL_SECONDS, self._periodic_snapshot)
            ),
        ]
        if self.executor.agent_ids:
            self._background.append(
                asyncio.create_task(self._every(settings.BALANCE_SYNC_INTERVAL_SECONDS, self.sync_balances))
            )
        logger.info(
            "Copy engine started",
            agents=settings.agent_ids,
            donor_wallets=len(self.classifier.roster.donor_wallets),
            self_wallets=len(self.classifier.roster.self_wallets),
            stream=self._stream_enabled,
            onchain=self._onchain_enabled,
            real_trading=bool(self.executor.agent_ids),
        )

    async def stop(self) -> None:
        self._stop_event.set()
        await self.poller.stop()
        await self.stream.stop()
        await self.onchain.stop()
        await self.resolver.stop()
        self.balance_sync.cancel()
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        self.lifecycle.cancel_pending()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        await self.client.close()
        logger.info("Copy engine stopped", stats=self._stats)

    def reload_donors(self, entries: Iterable[DonorEntry]) -> None:
        """Swap the donor roster; poller, stream and on-chain listener read it live."""
        roster = self.classifier.reload(entries)
        logger.info(
            "On-chain listener re-targeted",
            tracked_wallets=len(roster.donor_wallets),
        )

    def get_status(self) -> dict:
        return {
            "running": self._consumer is not None and not self._consumer.done(),
            "queue_depth": self._queue.qsize(),
            "stats": dict(self._stats),
            "exchange_balances": dict(self._exchange_balances),
            "coordinator": self.coordinator.get_status(),
            "lifecycle": self.lifecycle.get_status(),
            "executor": self.executor.get_status(),
            "sources": {
                "poller": self.poller.get_status(),
                "stream": self.stream.get_status() if self._stream_enabled else None,
                "onchain": self.onchain.get_status() if self._onchain_enabled else None,
                "resolution": self.resolver.get_status(),
            },
            "balance_sync_pending": self.balance_sync.pending,
            "subscribers": self.bus.subscriber_count,
        }
