import sys
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import DONOR_PROXY, SELF_WALLET  # noqa: E402
from services.activity_poller import ActivityPoller  # noqa: E402
from services.trade_coordinator import TradeCoordinator  # noqa: E402
from services.wallet_classifier import WalletClassifier  # noqa: E402

NOW = 1_760_000_100


def _poller(donors, agent_wallets, records, dispatch=None):
    client = AsyncMock()
    client.get_wallet_activity = AsyncMock(return_value=records)
    coordinator = TradeCoordinator(initial_lookback_seconds=30)
    poller = ActivityPoller(
        client,
        WalletClassifier(donors, agent_wallets),
        coordinator,
        dispatch or AsyncMock(),
        clock=lambda: NOW,
    )
    return poller, client, coordinator


def test_poll_targets_are_proxy_and_self_wallets(donors, agent_wallets):
    poller, _, _ = _poller(donors, agent_wallets, [])
    # On-chain-only wallets are covered by the chain listener, not REST.
    assert poller.poll_targets() == [DONOR_PROXY, SELF_WALLET]


@pytest.mark.asyncio
async def test_new_events_dispatch_oldest_first_then_cursor_advances(donors, agent_wallets, make_activity):
    records = [
        make_activity(timestamp=NOW - 5, transactionHash="0xb"),
        make_activity(timestamp=NOW - 10, transactionHash="0xa"),
        make_activity(timestamp=NOW - 60, transactionHash="0xold"),  # before lookback
        make_activity(timestamp=NOW - 8, type="REDEEM", transactionHash="0xr"),
    ]
    dispatch = AsyncMock()
    poller, _, coordinator = _poller(donors, agent_wallets, records, dispatch)

    handled = await poller.poll_wallet(DONOR_PROXY)

    assert handled == 2
    assert [call.args[0].tx_hash for call in dispatch.await_args_list] == ["0xa", "0xb"]
    assert coordinator.cursor_for(DONOR_PROXY, NOW) == NOW - 5

    # Same payload again: nothing newer than the cursor.
    assert await poller.poll_wallet(DONOR_PROXY) == 0
    assert dispatch.await_count == 2


@pytest.mark.asyncio
async def test_fetch_failure_leaves_cursor_untouched(donors, agent_wallets):
    poller, client, coordinator = _poller(donors, agent_wallets, [])
    coordinator.advance_cursor(DONOR_PROXY, NOW - 20)
    client.get_wallet_activity.side_effect = httpx.ConnectTimeout("timed out")

    assert await poller.poll_wallet(DONOR_PROXY) == 0
    assert coordinator.cursor_for(DONOR_PROXY, NOW) == NOW - 20
    assert poller.get_status()["stats"]["errors"] == 1


@pytest.mark.asyncio
async def test_dispatch_failure_holds_cursor_before_failed_event(donors, agent_wallets, make_activity):
    records = [
        make_activity(timestamp=NOW - 10, transactionHash="0xa"),
        make_activity(timestamp=NOW - 5, transactionHash="0xb"),
        make_activity(timestamp=NOW - 2, transactionHash="0xc"),
    ]
    dispatch = AsyncMock(side_effect=[None, RuntimeError("db locked"), None])
    poller, _, coordinator = _poller(donors, agent_wallets, records, dispatch)

    assert await poller.poll_wallet(DONOR_PROXY) == 1
    assert coordinator.cursor_for(DONOR_PROXY, NOW) == NOW - 10

    # The next cycle retries from the failed event.
    dispatch.side_effect = None
    assert await poller.poll_wallet(DONOR_PROXY) == 2
    assert coordinator.cursor_for(DONOR_PROXY, NOW) == NOW - 2


@pytest.mark.asyncio
async def test_poll_once_covers_every_target(donors, agent_wallets):
    poller, client, _ = _poller(donors, agent_wallets, [])
    await poller.poll_once()
    polled = [call.args[0] for call in client.get_wallet_activity.await_args_list]
    assert polled == [DONOR_PROXY, SELF_WALLET]
