"""
Trade lifecycle: open -> closed, never reopened.

All ledger mutation for replicated trades goes through this manager, and
the manager is only ever driven by the copy engine's single consumer task.
Real orders are spawned as background tasks after the ledger has moved;
their fills come back through ``reconcile`` via the engine queue.
"""

import asyncio
import random
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, Optional

from config import settings
from models.database import CopyTrade
from models.trade import (
    ExecutionResult,
    LifecycleOutcome,
    OrderAction,
    TradeEventKind,
    TradeIntent,
    TradeStatus,
)
from services.event_bus import EventBus
from services.ledger_store import LedgerStore
from services.order_executor import OrderExecutor
from services.trade_coordinator import TradeCoordinator, trade_identity
from utils.logger import get_logger
from utils.utcnow import utcnow
from utils.validation import is_tradable_price

logger = get_logger("trade_lifecycle")

ReconcileSink = Callable[[str, ExecutionResult], Awaitable[None]]

_CENT = Decimal("0.01")


def _round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def compute_settlement(entry_price: float, position_size: float, exit_price: float) -> tuple[float, float, bool]:
    """P&L, P&L percent and win flag for closing a position at ``exit_price``."""
    shares = position_size / entry_price
    pnl = _round2(shares * (exit_price - entry_price))
    pnl_percent = _round2((exit_price - entry_price) / entry_price * 100)
    return pnl, pnl_percent, pnl > 0


class TradeLifecycleManager:
    def __init__(
        self,
        store: LedgerStore,
        coordinator: TradeCoordinator,
        bus: EventBus,
        executor: Optional[OrderExecutor] = None,
        schedule_balance_sync: Optional[Callable[[], None]] = None,
        reconcile_sink: Optional[ReconcileSink] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.bus = bus
        self.executor = executor
        self._schedule_balance_sync = schedule_balance_sync
        self._reconcile_sink = reconcile_sink
        self._rng = rng or random.Random()
        self._tasks: set[asyncio.Task] = set()
        self._stats = {"opened": 0, "closed": 0, "resolved": 0, "skipped": 0}

    def set_reconcile_sink(self, sink: ReconcileSink) -> None:
        self._reconcile_sink = sink

    def set_balance_sync(self, schedule: Callable[[], None]) -> None:
        self._schedule_balance_sync = schedule

    # ==================== HELPERS ====================

    def position_size(self) -> float:
        jitter = self._rng.random() * settings.COPY_SIZE_JITTER_USD
        return _round2(settings.COPY_BASE_SIZE_USD + jitter)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight real orders (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    def _balance_sync(self) -> None:
        if self._schedule_balance_sync is not None:
            self._schedule_balance_sync()

    def _skip(self, agent_id: str, reason: str, **fields) -> LifecycleOutcome:
        self._stats["skipped"] += 1
        logger.debug("Intent skipped", agent_id=agent_id, reason=reason, **fields)
        return LifecycleOutcome(agent_id=agent_id, action="skipped", reason=reason)

    def _wants_real_order(self, agent_id: str, condition_id: Optional[str], is_self: bool) -> bool:
        return (
            not is_self
            and bool(condition_id)
            and self.executor is not None
            and self.executor.has_client(agent_id)
        )

    # ==================== OPEN ====================

    async def open_position(
        self,
        agent_id: str,
        intent: TradeIntent,
        donor_wallet: Optional[str] = None,
        is_self: bool = False,
    ) -> LifecycleOutcome:
        balance = await self.store.get_agent_balance(agent_id)
        if balance < settings.MIN_AGENT_BALANCE_USD:
            logger.info("Balance below minimum, skipping BUY", agent_id=agent_id, balance=balance)
            return self._skip(agent_id, "insufficient_balance", balance=balance)

        if not is_tradable_price(intent.price):
            return self._skip(agent_id, "invalid_price", price=intent.price)

        cid, idx = intent.condition_id, intent.outcome_index
        trade_id = trade_identity(cid, idx, intent.tx_hash, agent_id)
        if await self.store.has_seen_trade(trade_id):
            return self._skip(agent_id, "duplicate", trade_id=trade_id)
        if self.coordinator.entry_locked(cid, idx, agent_id):
            return self._skip(agent_id, "entry_locked", trade_id=trade_id)
        if await self.store.get_open_trades_by_market(cid, idx, agent_id=agent_id):
            return self._skip(agent_id, "already_open", trade_id=trade_id)
        if not self.coordinator.try_lock_entry(cid, idx, agent_id):
            return self._skip(agent_id, "entry_locked", trade_id=trade_id)

        size = self.position_size()
        trade = CopyTrade(
            id=trade_id,
            agent_id=agent_id,
            donor_wallet=None if is_self else donor_wallet,
            is_self=is_self,
            condition_id=cid,
            outcome_index=idx,
            token_id=intent.token_id,
            tx_hash=intent.tx_hash,
            asset=intent.asset,
            direction=intent.direction.value,
            side=intent.side.value,
            market_title=intent.title,
            market_slug=intent.slug,
            market_url=intent.market_url,
            market_icon=intent.icon,
            market_end=intent.market_end,
            entry_price=intent.price,
            position_size=size,
            status=TradeStatus.OPEN.value,
            opened_at=intent.opened_at,
        )
        await self.store.insert_trade(trade)
        await self.store.deduct_virtual_balance(agent_id, size)
        await self.store.record_equity_snapshot("open")
        self.bus.push_trade_event(TradeEventKind.OPEN, trade.to_dict())
        await self.bus.push_stats_update()
        self._stats["opened"] += 1
        logger.info(
            "Trade opened",
            agent_id=agent_id,
            trade_id=trade_id,
            asset=intent.asset,
            side=intent.side.value,
            price=intent.price,
            size=size,
            source=intent.source.value,
            self_trade=is_self,
        )

        if self._wants_real_order(agent_id, cid, is_self):
            if self.coordinator.was_pre_executed(intent.tx_hash):
                logger.info("Fill already copied on-chain, skipping real BUY", trade_id=trade_id)
            else:
                self._spawn(self._real_buy(trade_id, agent_id, intent, size))
        return LifecycleOutcome(agent_id=agent_id, action="opened", trade_ids=[trade_id])

    async def _real_buy(self, trade_id: str, agent_id: str, intent: TradeIntent, size: float) -> None:
        result = await self.executor.execute_buy(
            agent_id,
            intent.condition_id,
            intent.outcome_index,
            intent.price,
            size,
            token_id=intent.token_id,
        )
        if result.success and result.real_price is not None and result.real_size is not None:
            if self._reconcile_sink is not None:
                await self._reconcile_sink(trade_id, result)
            else:
                await self.reconcile(trade_id, result)
        self._balance_sync()

    # ==================== CLOSE ====================

    async def close_positions(
        self,
        agent_id: str,
        intent: TradeIntent,
        is_self: bool = False,
    ) -> LifecycleOutcome:
        exit_price = intent.price
        if exit_price is None or not 0.0 <= exit_price <= 1.0:
            return self._skip(agent_id, "invalid_price", price=exit_price)

        cid, idx = intent.condition_id, intent.outcome_index
        open_trades = await self.store.get_open_trades_by_market(cid, idx, agent_id=agent_id)
        if not open_trades:
            return self._skip(agent_id, "no_open_trade", condition_id=cid, outcome_index=idx)

        pre_executed = self.coordinator.was_pre_executed(intent.tx_hash)
        closed: list[str] = []
        for trade in open_trades:
            if not self.coordinator.try_lock_close(cid, idx, agent_id):
                self._skip(agent_id, "close_locked", trade_id=trade.id)
                continue
            await self._settle(trade, exit_price, close_reason="sell", closed_at=intent.opened_at)
            closed.append(trade.id)

            if self._wants_real_order(agent_id, cid, is_self):
                if pre_executed:
                    logger.info("Fill already copied on-chain, skipping real SELL", trade_id=trade.id)
                else:
                    self._spawn(
                        self._real_sell(
                            agent_id,
                            trade,
                            donor_price=exit_price,
                            token_id=intent.token_id or trade.token_id,
                        )
                    )

        if not closed:
            return LifecycleOutcome(agent_id=agent_id, action="skipped", reason="close_locked")
        self._balance_sync()
        return LifecycleOutcome(agent_id=agent_id, action="closed", trade_ids=closed)

    async def _settle(
        self,
        trade: CopyTrade,
        exit_price: float,
        close_reason: str,
        closed_at: Optional[datetime] = None,
    ) -> dict:
        """Close ``trade`` at ``exit_price``; ``closed_at`` defaults to now."""
        pnl, pnl_percent, is_win = compute_settlement(
            trade.entry_price, trade.position_size, exit_price
        )
        closed_at = closed_at or utcnow()
        await self.store.update_trade_on_close(
            trade.id,
            exit_price,
            pnl,
            pnl_percent,
            closed_at,
            TradeStatus.CLOSED.value,
            close_reason=close_reason,
        )
        await self.store.update_agent_stats_and_balance(
            trade.agent_id, pnl, trade.position_size, is_win
        )
        await self.store.record_equity_snapshot("close")

        payload = trade.to_dict()
        payload.update(
            {
                "exit_price": exit_price,
                "pnl": pnl,
                "pnl_percent": pnl_percent,
                "is_win": is_win,
                "status": TradeStatus.CLOSED.value,
                "close_reason": close_reason,
                "closed_at": closed_at.isoformat(),
            }
        )
        self.bus.push_trade_event(TradeEventKind.CLOSE, payload)
        await self.bus.push_stats_update()
        self._stats["closed"] += 1
        logger.info(
            "Trade closed",
            agent_id=trade.agent_id,
            trade_id=trade.id,
            exit_price=exit_price,
            pnl=pnl,
            pnl_percent=pnl_percent,
            reason=close_reason,
        )
        return payload

    async def _real_sell(
        self,
        agent_id: str,
        trade: CopyTrade,
        donor_price: Optional[float],
        token_id: Optional[str],
    ) -> None:
        shares = trade.position_size / trade.entry_price if trade.entry_price else None
        result = await self.executor.execute_sell(
            agent_id,
            trade.condition_id,
            trade.outcome_index,
            donor_price=donor_price,
            token_id=token_id,
            shares_to_sell=shares,
        )
        if not result.success and not result.skipped:
            logger.warning("Real close failed; ledger stays closed", trade_id=trade.id, error=result.error)
        self._balance_sync()

    # ==================== RESOLUTION ====================

    async def resolve_market(self, condition_id: str, winner_index: int) -> list[str]:
        """Close every open trade of a settled market at 1.0 (winner) or 0.0."""
        closed: list[str] = []
        for trade in await self.store.get_all_open_trades():
            if trade.condition_id != condition_id:
                continue
            is_winner = trade.outcome_index == winner_index
            await self._settle(trade, 1.0 if is_winner else 0.0, close_reason="resolution")
            closed.append(trade.id)
            if is_winner and self._wants_real_order(trade.agent_id, trade.condition_id, bool(trade.is_self)):
                self._spawn(self._real_sell(trade.agent_id, trade, donor_price=None, token_id=trade.token_id))

        if closed:
            self._stats["resolved"] += 1
            logger.info(
                "Market resolved",
                condition_id=condition_id,
                winner_index=winner_index,
                trades_closed=len(closed),
            )
            self._balance_sync()
        return closed

    # ==================== RECONCILIATION ====================

    async def reconcile(self, trade_id: str, result: ExecutionResult) -> Optional[float]:
        """Rewrite a trade's entry with its real fill."""
        if result.real_price is None or result.real_size is None:
            return None
        trade = await self.store.get_trade(trade_id)
        if trade is None:
            logger.warning("Reconcile for unknown trade", trade_id=trade_id)
            return None
        adjustment = await self.store.update_trade_with_real_execution(
            trade_id, result.real_price, result.real_size
        )
        if trade.status != TradeStatus.OPEN.value:
            logger.warning(
                "Real fill arrived after close; ledger keeps the virtual entry",
                trade_id=trade_id,
                virtual_price=trade.entry_price,
                virtual_size=trade.position_size,
                real_price=result.real_price,
                real_size=result.real_size,
            )
            return adjustment
        logger.info(
            "Trade reconciled with real fill",
            trade_id=trade_id,
            real_price=result.real_price,
            real_size=result.real_size,
            balance_adjustment=adjustment,
        )
        return adjustment

    # ==================== ROUTING ====================

    async def apply(
        self,
        agent_id: str,
        intent: TradeIntent,
        donor_wallet: Optional[str] = None,
        is_self: bool = False,
    ) -> LifecycleOutcome:
        if intent.action == OrderAction.BUY:
            return await self.open_position(agent_id, intent, donor_wallet=donor_wallet, is_self=is_self)
        return await self.close_positions(agent_id, intent, is_self=is_self)

    def get_status(self) -> dict:
        return {"pending_orders": len(self._tasks), "stats": dict(self._stats)}
