import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import DonorEntry  # noqa: E402
from conftest import CONDITION_ID, DONOR_ONCHAIN, DONOR_PROXY, SELF_WALLET  # noqa: E402
from models.database import init_database  # noqa: E402
from services.copy_engine import CopyEngine, ReconcileCommand, SnapshotCommand  # noqa: E402
from services.event_normalizer import normalize_activity  # noqa: E402
from services.ledger_store import LedgerStore  # noqa: E402
from services.order_executor import OrderExecutor  # noqa: E402
from services.wallet_classifier import WalletClassifier  # noqa: E402


async def _engine(tmp_path: Path, donors, agent_wallets):
    db = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    await init_database(db)
    store = LedgerStore(sessionmaker(db, class_=AsyncSession, expire_on_commit=False))
    await store.initialize_agents(["agent-a", "agent-b"], 50.0)

    client = AsyncMock()
    client.get_wallet_activity = AsyncMock(return_value=[])
    engine = CopyEngine(
        store=store,
        classifier=WalletClassifier(donors, agent_wallets),
        executor=OrderExecutor(),
        client=client,
        stream_enabled=False,
        onchain_enabled=False,
    )
    return db, engine


@pytest.mark.asyncio
async def test_donor_intent_fans_out_to_every_mapped_agent(tmp_path, donors, agent_wallets, make_activity):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    try:
        intent = normalize_activity(DONOR_PROXY, make_activity())
        outcomes = await engine.handle_intent(intent)

        assert [(o.agent_id, o.action) for o in outcomes] == [("agent-a", "opened"), ("agent-b", "opened")]
        trade = await engine.store.get_trade(f"{CONDITION_ID}_0_0xtx01_agent-b")
        assert trade.donor_wallet == DONOR_PROXY
        assert trade.is_self is False
    finally:
        await db.dispose()


@pytest.mark.asyncio
async def test_self_and_unknown_wallet_routing(tmp_path, donors, agent_wallets, make_activity):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    try:
        self_intent = normalize_activity(
            SELF_WALLET, make_activity(proxyWallet=SELF_WALLET, transactionHash="0xself", outcomeIndex=1)
        )
        outcomes = await engine.handle_intent(self_intent)
        assert [(o.agent_id, o.action) for o in outcomes] == [("agent-a", "opened")]
        trade = await engine.store.get_trade(f"{CONDITION_ID}_1_0xself_agent-a")
        assert trade.is_self is True
        assert trade.donor_wallet is None

        stranger = "0x9999999999999999999999999999999999999999"
        unknown = normalize_activity(stranger, make_activity(proxyWallet=stranger))
        assert await engine.handle_intent(unknown) == []
        assert engine.get_status()["stats"]["dropped"] == 1
    finally:
        await db.dispose()


@pytest.mark.asyncio
async def test_queued_commands_resolve_their_futures(tmp_path, donors, agent_wallets, make_activity):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    consumer = asyncio.create_task(engine._consume())
    try:
        intent = normalize_activity(DONOR_PROXY, make_activity())
        first, second = await asyncio.gather(engine.submit_intent(intent), engine.submit_intent(intent))

        # The second copy of the same event is serialized behind the first.
        assert [o.action for o in first] == ["opened", "opened"]
        assert {o.reason for o in second} == {"duplicate"}

        closed = await engine.submit_resolution(CONDITION_ID, 0)
        assert sorted(closed) == [
            f"{CONDITION_ID}_0_0xtx01_agent-a",
            f"{CONDITION_ID}_0_0xtx01_agent-b",
        ]

        balances = await engine.submit_and_wait(SnapshotCommand("sync", exchange_balances={"agent-a": 12.5}))
        assert set(balances) == {"agent-a", "agent-b"}
        assert engine.get_status()["exchange_balances"] == {"agent-a": 12.5}
        assert engine.get_status()["stats"]["intents"] == 2
    finally:
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        await db.dispose()


@pytest.mark.asyncio
async def test_failed_command_propagates_to_its_producer_only(tmp_path, donors, agent_wallets):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    engine.lifecycle.reconcile = AsyncMock(side_effect=RuntimeError("disk full"))
    consumer = asyncio.create_task(engine._consume())
    try:
        with pytest.raises(RuntimeError, match="disk full"):
            await engine.submit_and_wait(ReconcileCommand("missing", MagicMock()))

        # The consumer survives and keeps serving.
        assert set(await engine.submit_and_wait(SnapshotCommand("periodic"))) == {"agent-a", "agent-b"}
        assert engine.get_status()["stats"]["failed"] == 1
    finally:
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)
        await db.dispose()


@pytest.mark.asyncio
async def test_reload_donors_retargets_sources(tmp_path, donors, agent_wallets):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    try:
        fresh = "0x4444444444444444444444444444444444444444"
        engine.reload_donors([DonorEntry(agent_id="agent-a", proxy_wallet=fresh)])

        assert fresh in engine.poller.poll_targets()
        assert DONOR_PROXY not in engine.poller.poll_targets()
        assert DONOR_ONCHAIN not in engine.classifier.roster.donor_wallets
    finally:
        await db.dispose()


@pytest.mark.asyncio
async def test_start_and_stop(tmp_path, donors, agent_wallets):
    db, engine = await _engine(tmp_path, donors, agent_wallets)
    try:
        await engine.start()
        assert engine.get_status()["running"] is True
        assert engine.get_status()["sources"]["stream"] is None

        await engine.stop()
        assert engine.get_status()["running"] is False
        engine.client.close.assert_awaited_once()
    finally:
        await db.dispose()


def test_services_package_exports_engine_lazily():
    import services

    assert services.CopyEngine is CopyEngine
    with pytest.raises(AttributeError):
        services.NotAThing  # noqa: B018
