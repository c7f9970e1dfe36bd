from sqlalchemy import (
    Column,
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    JSON,
    Index,
    event,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from datetime import datetime
import logging

from config import settings
from models.types import PreciseFloat as Float

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== COPY TRADES ====================


class CopyTrade(Base):
    """A position replicated from a donor (or the agent's own wallet).

    The primary key is the trade identity
    ``{condition_id}_{outcome_index}_{tx_hash}_{agent_id}`` so replaying the
    same activity through any source can never insert a second row.
    """

    __tablename__ = "copy_trades"

    id = Column(String, primary_key=True)
    agent_id = Column(String, nullable=False)
    donor_wallet = Column(String, nullable=True)  # NULL for self-originated trades
    is_self = Column(Boolean, nullable=False, default=False)

    # Market
    condition_id = Column(String, nullable=True)
    outcome_index = Column(Integer, nullable=False, default=0)
    token_id = Column(String, nullable=True)
    tx_hash = Column(String, nullable=True)
    asset = Column(String, nullable=False, default="POLY")
    direction = Column(String, nullable=False)  # UP or DOWN
    side = Column(String, nullable=False)  # YES or NO
    market_title = Column(Text, nullable=True)
    market_slug = Column(String, nullable=True)
    market_url = Column(String, nullable=True)
    market_icon = Column(String, nullable=True)
    market_end = Column(DateTime, nullable=True)

    # Position
    entry_price = Column(Float, nullable=False)
    position_size = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=True)
    is_win = Column(Boolean, nullable=True)
    status = Column(String, nullable=False, default="open")  # open, closed
    close_reason = Column(String, nullable=True)  # sell, resolution

    # Real execution
    real_executed = Column(Boolean, nullable=False, default=False)
    real_entry_price = Column(Float, nullable=True)
    real_position_size = Column(Float, nullable=True)

    opened_at = Column(DateTime, default=datetime.utcnow)
    closed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_copy_trade_agent_status", "agent_id", "status"),
        Index("idx_copy_trade_market", "condition_id", "outcome_index", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "donor_wallet": self.donor_wallet,
            "is_self": bool(self.is_self),
            "condition_id": self.condition_id,
            "outcome_index": self.outcome_index,
            "token_id": self.token_id,
            "tx_hash": self.tx_hash,
            "asset": self.asset,
            "direction": self.direction,
            "side": self.side,
            "market_title": self.market_title,
            "market_slug": self.market_slug,
            "market_url": self.market_url,
            "market_icon": self.market_icon,
            "market_end": self.market_end.isoformat() if self.market_end else None,
            "entry_price": self.entry_price,
            "position_size": self.position_size,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "pnl_percent": self.pnl_percent,
            "is_win": self.is_win,
            "status": self.status,
            "close_reason": self.close_reason,
            "real_executed": bool(self.real_executed),
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


# ==================== AGENT STATS ====================


class AgentStats(Base):
    """Virtual balance and running performance counters for one agent."""

    __tablename__ = "agent_stats"

    agent_id = Column(String, primary_key=True)
    balance = Column(Float, nullable=False, default=1000.0)
    starting_balance = Column(Float, nullable=False, default=1000.0)
    total_pnl = Column(Float, nullable=False, default=0.0)
    total_trades = Column(Integer, nullable=False, default=0)
    wins = Column(Integer, nullable=False, default=0)
    losses = Column(Integer, nullable=False, default=0)
    win_rate = Column(Float, nullable=False, default=0.0)
    roi = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "balance": self.balance,
            "starting_balance": self.starting_balance,
            "total_pnl": self.total_pnl,
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "roi": self.roi,
        }


# ==================== EQUITY HISTORY ====================


class EquitySnapshot(Base):
    """Append-only record of every agent's balance at one instant."""

    __tablename__ = "equity_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recorded_at = Column(DateTime, default=datetime.utcnow, index=True)
    balances = Column(JSON, nullable=False)  # {agent_id: balance}
    reason = Column(String, nullable=True)


# ==================== DATABASE SETUP ====================

_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent readers (WAL mode, busy timeout)."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_database(engine=None):
    """Create any missing ledger tables."""
    target = engine or async_engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Ledger tables ready")
