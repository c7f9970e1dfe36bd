"""
Ledger persistence for replicated trades, agent balances and equity history.

Thin async repository over the SQLAlchemy models in ``models.database``.
Only the copy engine's single consumer task writes through this store, so
each operation is its own short transaction. Balance arithmetic is done in
Decimal so an open followed by a zero-P&L close returns the balance to the
exact starting value.
"""

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from models.database import AgentStats, AsyncSessionLocal, CopyTrade, EquitySnapshot
from models.trade import TradeStatus
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("ledger_store")

# Real-execution cost deltas below this are rounding noise.
RECONCILE_TOLERANCE_USD = Decimal("0.001")


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


class LedgerStore:
    """Async persistence contract used by the lifecycle manager."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or AsyncSessionLocal

    def _session(self) -> AsyncSession:
        return self._session_factory()

    # ==================== AGENTS ====================

    async def initialize_agents(self, agent_ids: Iterable[str], starting_balance: float) -> None:
        """Create missing agent rows; existing balances are left alone."""
        async with self._session() as session:
            existing = set(
                (await session.execute(select(AgentStats.agent_id))).scalars().all()
            )
            created = []
            for agent_id in agent_ids:
                if agent_id in existing:
                    continue
                session.add(
                    AgentStats(
                        agent_id=agent_id,
                        balance=starting_balance,
                        starting_balance=starting_balance,
                    )
                )
                created.append(agent_id)
            await session.commit()
        if created:
            logger.info("Initialized agents", agents=created, starting_balance=starting_balance)

    async def get_agent_balance(self, agent_id: str) -> float:
        async with self._session() as session:
            balance = (
                await session.execute(
                    select(AgentStats.balance).where(AgentStats.agent_id == agent_id)
                )
            ).scalar_one_or_none()
        return float(balance) if balance is not None else 0.0

    async def deduct_virtual_balance(self, agent_id: str, amount: float) -> None:
        async with self._session() as session:
            stats = await session.get(AgentStats, agent_id)
            if stats is None:
                logger.warning("Balance debit for unknown agent", agent_id=agent_id)
                return
            stats.balance = _dec(stats.balance) - _dec(amount)
            await session.commit()

    async def update_agent_stats_and_balance(
        self,
        agent_id: str,
        pnl: float,
        position_size: float,
        is_win: Optional[bool],
    ) -> None:
        """Credit principal plus P&L and roll the win/loss counters.

        ``is_win=None`` credits the balance without counting a trade.
        """
        async with self._session() as session:
            stats = await session.get(AgentStats, agent_id)
            if stats is None:
                logger.warning("Balance credit for unknown agent", agent_id=agent_id)
                return
            stats.balance = _dec(stats.balance) + _dec(position_size) + _dec(pnl)
            stats.total_pnl = _dec(stats.total_pnl) + _dec(pnl)
            if is_win is not None:
                stats.total_trades = (stats.total_trades or 0) + 1
                if is_win:
                    stats.wins = (stats.wins or 0) + 1
                else:
                    stats.losses = (stats.losses or 0) + 1
            total_trades = stats.total_trades or 0
            stats.win_rate = (stats.wins or 0) * 100.0 / total_trades if total_trades else 0.0
            starting = _dec(stats.starting_balance)
            stats.roi = float(_dec(stats.total_pnl) / starting * 100) if starting > 0 else 0.0
            await session.commit()

    async def get_all_agent_stats(self) -> list[dict]:
        async with self._session() as session:
            rows = (
                await session.execute(select(AgentStats).order_by(AgentStats.agent_id))
            ).scalars().all()
        return [row.to_dict() for row in rows]

    # ==================== TRADES ====================

    async def insert_trade(self, trade: CopyTrade) -> None:
        async with self._session() as session:
            session.add(trade)
            await session.commit()

    async def has_seen_trade(self, trade_id: str) -> bool:
        async with self._session() as session:
            found = (
                await session.execute(select(CopyTrade.id).where(CopyTrade.id == trade_id))
            ).scalar_one_or_none()
        return found is not None

    async def get_trade(self, trade_id: str) -> Optional[CopyTrade]:
        async with self._session() as session:
            return await session.get(CopyTrade, trade_id)

    async def get_open_trades_by_market(
        self,
        condition_id: str,
        outcome_index: int,
        agent_id: Optional[str] = None,
    ) -> list[CopyTrade]:
        query = select(CopyTrade).where(
            CopyTrade.condition_id == condition_id,
            CopyTrade.outcome_index == outcome_index,
            CopyTrade.status == TradeStatus.OPEN.value,
        )
        if agent_id is not None:
            query = query.where(CopyTrade.agent_id == agent_id)
        async with self._session() as session:
            return list((await session.execute(query.order_by(CopyTrade.opened_at))).scalars().all())

    async def get_all_open_trades(self) -> list[CopyTrade]:
        async with self._session() as session:
            rows = await session.execute(
                select(CopyTrade)
                .where(CopyTrade.status == TradeStatus.OPEN.value)
                .order_by(CopyTrade.opened_at)
            )
            return list(rows.scalars().all())

    async def update_trade_on_close(
        self,
        trade_id: str,
        exit_price: float,
        pnl: float,
        pnl_percent: float,
        closed_at: datetime,
        status: str = TradeStatus.CLOSED.value,
        close_reason: Optional[str] = None,
    ) -> Optional[CopyTrade]:
        async with self._session() as session:
            trade = await session.get(CopyTrade, trade_id)
            if trade is None:
                return None
            trade.exit_price = exit_price
            trade.pnl = pnl
            trade.pnl_percent = pnl_percent
            trade.is_win = pnl > 0
            trade.closed_at = closed_at
            trade.status = status
            trade.close_reason = close_reason
            await session.commit()
            return trade

    async def update_trade_with_real_execution(
        self, trade_id: str, real_price: float, real_size: float
    ) -> Optional[float]:
        """Rewrite entry price/size with the real fill.

        Returns the balance adjustment applied (negative when the real order
        cost more than the estimate), or None for an unknown trade. A trade
        that already closed keeps its virtual entry, P&L and balance; only the
        real fill fields are recorded and the adjustment is 0.
        """
        async with self._session() as session:
            trade = await session.get(CopyTrade, trade_id)
            if trade is None:
                return None
            trade.real_executed = True
            trade.real_entry_price = real_price
            trade.real_position_size = real_size
            adjustment = Decimal("0")
            if trade.status != TradeStatus.OPEN.value:
                await session.commit()
                return 0.0

            diff = _dec(real_size) - _dec(trade.position_size)
            trade.entry_price = real_price
            trade.position_size = real_size
            if abs(diff) > RECONCILE_TOLERANCE_USD:
                stats = await session.get(AgentStats, trade.agent_id)
                if stats is not None:
                    stats.balance = _dec(stats.balance) - diff
                    adjustment = -diff
            await session.commit()
        return float(adjustment)

    # ==================== EQUITY ====================

    async def record_equity_snapshot(self, reason: Optional[str] = None) -> dict[str, float]:
        async with self._session() as session:
            rows = (await session.execute(select(AgentStats.agent_id, AgentStats.balance))).all()
            balances = {agent_id: float(balance) for agent_id, balance in rows}
            session.add(EquitySnapshot(recorded_at=utcnow(), balances=balances, reason=reason))
            await session.commit()
        return balances

    async def get_recent_equity(self, limit: int = 500) -> list[dict]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(EquitySnapshot).order_by(EquitySnapshot.id.desc()).limit(limit)
                )
            ).scalars().all()
        return [
            {
                "recorded_at": row.recorded_at.isoformat() if row.recorded_at else None,
                "balances": row.balances,
                "reason": row.reason,
            }
            for row in reversed(rows)
        ]

    # ==================== RESET ====================

    async def reset_ledger(self, starting_balance: float) -> None:
        """Delete every trade and snapshot and restore every agent to the start."""
        async with self._session() as session:
            await session.execute(delete(CopyTrade))
            await session.execute(delete(EquitySnapshot))
            await session.execute(
                update(AgentStats).values(
                    balance=starting_balance,
                    starting_balance=starting_balance,
                    total_pnl=0.0,
                    total_trades=0,
                    wins=0,
                    losses=0,
                    win_rate=0.0,
                    roi=0.0,
                )
            )
            await session.commit()
        logger.warning("Ledger reset", starting_balance=starting_balance)
