import asyncio
import random
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import CONDITION_ID, DONOR_PROXY  # noqa: E402
from models.database import init_database  # noqa: E402
from models.trade import ExecutionResult, IntentSource, TradeEventKind  # noqa: E402
from services.event_bus import EventBus  # noqa: E402
from services.event_normalizer import normalize_activity  # noqa: E402
from services.ledger_store import LedgerStore  # noqa: E402
from services.trade_coordinator import TradeCoordinator  # noqa: E402
from services.trade_lifecycle import TradeLifecycleManager, compute_settlement  # noqa: E402
from utils.utcnow import utcfromtimestamp  # noqa: E402


async def _build_store(tmp_path: Path, balance: float = 50.0):
    db_path = tmp_path / "lifecycle.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    await init_database(engine)
    store = LedgerStore(sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await store.initialize_agents(["agent-a", "agent-b"], balance)
    return engine, store


def _manager(store, clock, executor=None, **kwargs):
    coordinator = TradeCoordinator(lock_grace_seconds=5, pre_executed_ttl_seconds=60, clock=clock)
    return TradeLifecycleManager(
        store, coordinator, EventBus(), executor=executor, rng=random.Random(7), **kwargs
    )


def _intent(make_activity, **overrides):
    return normalize_activity(DONOR_PROXY, make_activity(**overrides), IntentSource.POLL)


def _fake_executor(buy_result=None, sell_result=None):
    executor = MagicMock()
    executor.has_client.return_value = True
    executor.execute_buy = AsyncMock(return_value=buy_result or ExecutionResult.skip("test"))
    executor.execute_sell = AsyncMock(return_value=sell_result or ExecutionResult.skip("test"))
    return executor


def test_compute_settlement():
    assert compute_settlement(0.5, 1.2, 1.0) == (1.2, 100.0, True)
    assert compute_settlement(0.5, 1.2, 0.0) == (-1.2, -100.0, False)
    assert compute_settlement(0.5, 1.2, 0.5) == (0.0, 0.0, False)


@pytest.mark.asyncio
async def test_donor_buy_opens_trade_and_debits_balance(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        outcome = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)

        assert outcome.action == "opened"
        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.entry_price == pytest.approx(0.55)
        assert 1.10 <= trade.position_size <= 1.30
        assert trade.status == "open"
        assert trade.donor_wallet == DONOR_PROXY
        assert await store.get_agent_balance("agent-a") == pytest.approx(50.0 - trade.position_size)
        assert outcome.trade_ids[0] == f"{CONDITION_ID}_0_0xtx01_agent-a"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_replayed_event_is_idempotent(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        intent = _intent(make_activity)
        await manager.open_position("agent-a", intent, donor_wallet=DONOR_PROXY)
        balance = await store.get_agent_balance("agent-a")

        clock.advance(30)  # well past the lock grace window
        replay = await manager.open_position("agent-a", intent, donor_wallet=DONOR_PROXY)

        assert replay.action == "skipped"
        assert replay.reason == "duplicate"
        assert len(await store.get_all_open_trades()) == 1
        assert await store.get_agent_balance("agent-a") == balance
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_single_open_trade_per_agent_and_outcome(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)

        # A second fill inside the grace window hits the entry lock.
        locked = await manager.open_position(
            "agent-a", _intent(make_activity, transactionHash="0xtx02"), donor_wallet=DONOR_PROXY
        )
        clock.advance(6)
        # After the lock expires the open trade still blocks a second entry.
        already = await manager.open_position(
            "agent-a", _intent(make_activity, transactionHash="0xtx03"), donor_wallet=DONOR_PROXY
        )
        # Other agents and other outcomes are independent.
        other_agent = await manager.open_position(
            "agent-b", _intent(make_activity, transactionHash="0xtx02"), donor_wallet=DONOR_PROXY
        )
        other_outcome = await manager.open_position(
            "agent-a", _intent(make_activity, transactionHash="0xtx04", outcomeIndex=1), donor_wallet=DONOR_PROXY
        )

        assert locked.reason == "entry_locked"
        assert already.reason == "already_open"
        assert other_agent.action == "opened"
        assert other_outcome.action == "opened"
        assert len(await store.get_open_trades_by_market(CONDITION_ID, 0, agent_id="agent-a")) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_insufficient_balance_drops_buy_before_locking(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path, balance=0.5)
    try:
        manager = _manager(store, clock)
        outcome = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)

        assert outcome.reason == "insufficient_balance"
        assert manager.coordinator.entry_locked(CONDITION_ID, 0, "agent-a") is False
        assert await store.get_all_open_trades() == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_invalid_price_is_rejected(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        outcome = await manager.open_position("agent-a", _intent(make_activity, price=1.0))
        assert outcome.reason == "invalid_price"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_sell_without_open_trade_is_noop(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        outcome = await manager.close_positions("agent-a", _intent(make_activity, side="SELL"))

        assert outcome.action == "skipped"
        assert outcome.reason == "no_open_trade"
        assert await store.get_agent_balance("agent-a") == 50.0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_close_at_entry_price_restores_balance_exactly(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        bus_queue = manager.bus.subscribe()
        await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        outcome = await manager.close_positions(
            "agent-a", _intent(make_activity, side="SELL", transactionHash="0xtx09")
        )

        assert outcome.action == "closed"
        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.status == "closed"
        assert trade.pnl == 0.0
        assert trade.close_reason == "sell"
        assert await store.get_agent_balance("agent-a") == 50.0

        kinds = [bus_queue.get_nowait()["type"] for _ in range(bus_queue.qsize())]
        assert kinds == [TradeEventKind.OPEN.value, TradeEventKind.CLOSE.value]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_close_lock_prevents_double_settlement(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        manager.coordinator.try_lock_close(CONDITION_ID, 0, "agent-a")

        outcome = await manager.close_positions("agent-a", _intent(make_activity, side="SELL", price=0.7))

        assert outcome.reason == "close_locked"
        assert len(await store.get_all_open_trades()) == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_resolution_settles_winner_and_loser(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        win = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        lose = await manager.open_position(
            "agent-a",
            _intent(make_activity, transactionHash="0xtx05", outcomeIndex=1, price=0.45),
            donor_wallet=DONOR_PROXY,
        )

        closed = await manager.resolve_market(CONDITION_ID, 0)

        assert set(closed) == {win.trade_ids[0], lose.trade_ids[0]}
        winner = await store.get_trade(win.trade_ids[0])
        loser = await store.get_trade(lose.trade_ids[0])
        assert winner.exit_price == 1.0
        assert winner.pnl > 0
        assert winner.close_reason == "resolution"
        assert loser.exit_price == 0.0
        assert loser.pnl == pytest.approx(-loser.position_size)
        assert await store.get_all_open_trades() == []

        stats = {row["agent_id"]: row for row in await store.get_all_agent_stats()}
        assert stats["agent-a"]["wins"] == 1
        assert stats["agent-a"]["losses"] == 1
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_self_trade_never_places_real_order(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        executor = _fake_executor()
        manager = _manager(store, clock, executor=executor)
        outcome = await manager.open_position("agent-a", _intent(make_activity), is_self=True)
        await manager.drain()

        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.is_self is True
        assert trade.donor_wallet is None
        executor.execute_buy.assert_not_awaited()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_pre_executed_fill_skips_real_order_but_updates_ledger(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        executor = _fake_executor()
        manager = _manager(store, clock, executor=executor)
        manager.coordinator.mark_pre_executed("0xTX01")

        outcome = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        await manager.drain()

        assert outcome.action == "opened"
        executor.execute_buy.assert_not_awaited()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_real_fill_reconciles_entry_and_balance(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        fill = ExecutionResult(success=True, real_price=0.58, real_size=1.276, shares=2.2, order_id="o1")
        executor = _fake_executor(buy_result=fill)
        synced = MagicMock()
        manager = _manager(store, clock, executor=executor, schedule_balance_sync=synced)

        outcome = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        estimated = (await store.get_trade(outcome.trade_ids[0])).position_size
        await manager.drain()

        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.real_executed is True
        assert trade.entry_price == pytest.approx(0.58)
        assert trade.position_size == pytest.approx(1.276)
        assert await store.get_agent_balance("agent-a") == pytest.approx(50.0 - 1.276)
        assert estimated != pytest.approx(1.276)
        synced.assert_called()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_failed_real_order_leaves_ledger_untouched(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        executor = _fake_executor(buy_result=ExecutionResult.failed("rejected"))
        manager = _manager(store, clock, executor=executor)

        outcome = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        await manager.drain()

        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.real_executed is False
        assert trade.status == "open"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_sell_close_is_stamped_with_the_sell_event_time(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        manager = _manager(store, clock)
        await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        outcome = await manager.close_positions(
            "agent-a", _intent(make_activity, side="SELL", transactionHash="0xtx09", timestamp=1_760_000_420)
        )

        trade = await store.get_trade(outcome.trade_ids[0])
        assert trade.closed_at == utcfromtimestamp(1_760_000_420)
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_real_fill_after_close_keeps_ledger_consistent(tmp_path, clock, make_activity):
    engine, store = await _build_store(tmp_path)
    try:
        release = asyncio.Event()
        fill = ExecutionResult(success=True, real_price=0.58, real_size=1.276, shares=2.2, order_id="o1")

        async def _slow_buy(*args, **kwargs):
            await release.wait()
            return fill

        executor = _fake_executor()
        executor.execute_buy = AsyncMock(side_effect=_slow_buy)
        manager = _manager(store, clock, executor=executor)

        opened = await manager.open_position("agent-a", _intent(make_activity), donor_wallet=DONOR_PROXY)
        estimated = (await store.get_trade(opened.trade_ids[0])).position_size
        await manager.close_positions(
            "agent-a", _intent(make_activity, side="SELL", transactionHash="0xtx09")
        )
        assert await store.get_agent_balance("agent-a") == 50.0

        release.set()
        await manager.drain()

        trade = await store.get_trade(opened.trade_ids[0])
        assert trade.status == "closed"
        assert trade.entry_price == pytest.approx(0.55)
        assert trade.position_size == pytest.approx(estimated)
        assert trade.real_executed is True
        assert trade.real_entry_price == pytest.approx(0.58)
        assert trade.real_position_size == pytest.approx(1.276)
        assert await store.get_agent_balance("agent-a") == pytest.approx(50.0 + trade.pnl)
    finally:
        await engine.dispose()
