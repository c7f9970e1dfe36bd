"""
In-flight coordination state for the copy engine.

Owns everything that must not be persisted but must be shared by every
ingestion source: per-wallet cursors, entry/close locks, and the set of
transactions already executed on-chain. Locks expire on their own after a
grace window; expiry is checked lazily whenever the set is touched, so there
is no timer per key.
"""

import time
from typing import Callable, Optional

from config import settings
from utils.logger import get_logger

logger = get_logger("trade_coordinator")

Clock = Callable[[], float]


def trade_identity(condition_id: str, outcome_index: int, tx_hash: str, agent_id: str) -> str:
    """Stable dedup key for one replicated trade."""
    return f"{condition_id}_{outcome_index}_{tx_hash}_{agent_id}"


def entry_lock_key(condition_id: str, outcome_index: int, agent_id: str) -> str:
    return f"{condition_id}_{outcome_index}_{agent_id}"


def close_lock_key(condition_id: str, outcome_index: int, agent_id: str) -> str:
    return f"{condition_id}_{outcome_index}_{agent_id}_sell"


class ExpiringKeySet:
    """Set of keys that each disappear ``ttl`` seconds after being added."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        expired = [key for key, deadline in self._expiry.items() if deadline <= now]
        for key in expired:
            del self._expiry[key]

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        self._prune(now)
        return key in self._expiry

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._expiry)

    def add(self, key: str) -> None:
        now = self._clock()
        self._prune(now)
        self._expiry[key] = now + self.ttl

    def acquire(self, key: str) -> bool:
        """Add ``key`` unless it is already live. Returns True on success."""
        now = self._clock()
        self._prune(now)
        if key in self._expiry:
            return False
        self._expiry[key] = now + self.ttl
        return True


class ExpiringCache:
    """Key/value map whose entries go stale ``ttl`` seconds after being set."""

    def __init__(self, ttl: float, clock: Clock = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._entries: dict = {}

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, deadline) in self._entries.items() if deadline <= now]
        for key in expired:
            del self._entries[key]

    def get(self, key, default=None):
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, deadline = entry
        if deadline <= self._clock():
            del self._entries[key]
            return default
        return value

    def set(self, key, value) -> None:
        now = self._clock()
        self._prune(now)
        self._entries[key] = (value, now + self.ttl)

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._entries)


class TradeCoordinator:
    """Dedup, locking and cursor bookkeeping shared by all sources."""

    def __init__(
        self,
        lock_grace_seconds: Optional[float] = None,
        pre_executed_ttl_seconds: Optional[float] = None,
        initial_lookback_seconds: Optional[int] = None,
        clock: Clock = time.monotonic,
    ):
        grace = settings.LOCK_GRACE_SECONDS if lock_grace_seconds is None else lock_grace_seconds
        pre_ttl = (
            settings.PRE_EXECUTED_TTL_SECONDS
            if pre_executed_ttl_seconds is None
            else pre_executed_ttl_seconds
        )
        self.initial_lookback_seconds = (
            settings.INITIAL_LOOKBACK_SECONDS
            if initial_lookback_seconds is None
            else initial_lookback_seconds
        )
        self.entry_locks = ExpiringKeySet(grace, clock)
        self.close_locks = ExpiringKeySet(grace, clock)
        self.pre_executed = ExpiringKeySet(pre_ttl, clock)
        self._cursors: dict[str, int] = {}

    # ==================== CURSORS ====================

    def cursor_for(self, wallet: str, now_ts: int) -> int:
        """Last processed activity timestamp, or a short lookback on first sight."""
        cursor = self._cursors.get(wallet.lower())
        if cursor is None:
            return int(now_ts) - int(self.initial_lookback_seconds)
        return cursor

    def advance_cursor(self, wallet: str, ts: int) -> None:
        key = wallet.lower()
        current = self._cursors.get(key)
        if current is None or ts > current:
            self._cursors[key] = int(ts)

    def cursors(self) -> dict[str, int]:
        return dict(self._cursors)

    # ==================== LOCKS ====================

    def try_lock_entry(self, condition_id: str, outcome_index: int, agent_id: str) -> bool:
        return self.entry_locks.acquire(entry_lock_key(condition_id, outcome_index, agent_id))

    def entry_locked(self, condition_id: str, outcome_index: int, agent_id: str) -> bool:
        return entry_lock_key(condition_id, outcome_index, agent_id) in self.entry_locks

    def try_lock_close(self, condition_id: str, outcome_index: int, agent_id: str) -> bool:
        return self.close_locks.acquire(close_lock_key(condition_id, outcome_index, agent_id))

    # ==================== ON-CHAIN PRE-EXECUTION ====================

    def mark_pre_executed(self, tx_hash: str) -> bool:
        """Record a fill seen on-chain. False when it was already recorded."""
        if not tx_hash:
            return False
        if not self.pre_executed.acquire(tx_hash.lower()):
            logger.debug("Fill already pre-executed", tx_hash=tx_hash)
            return False
        return True

    def was_pre_executed(self, tx_hash: Optional[str]) -> bool:
        return bool(tx_hash) and tx_hash.lower() in self.pre_executed

    def get_status(self) -> dict:
        return {
            "wallet_cursors": len(self._cursors),
            "entry_locks": len(self.entry_locks),
            "close_locks": len(self.close_locks),
            "pre_executed": len(self.pre_executed),
        }
