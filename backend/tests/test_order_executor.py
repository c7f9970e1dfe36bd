import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.order_executor import OrderExecutor, is_rejected  # noqa: E402
from services.order_precision import is_tick_aligned  # noqa: E402


def _fake_client(post_response=None, conditional_balance=0, quote=None):
    client = MagicMock()
    client.create_order.side_effect = lambda args: {"signed": args}
    client.post_order.return_value = (
        {"success": True, "orderID": "order-1", "status": "matched"}
        if post_response is None
        else post_response
    )
    client.get_market.return_value = {
        "tokens": [{"token_id": "tok-yes"}, {"token_id": "tok-no"}]
    }
    client.get_balance_allowance.return_value = {"balance": str(conditional_balance)}
    client.get_price.return_value = {"price": quote}
    return client


def _submitted_args(client):
    return client.create_order.call_args.args[0]


def test_is_rejected():
    assert is_rejected(None) is True
    assert is_rejected({"error": "not enough balance"}) is True
    assert is_rejected({"status": "REJECTED"}) is True
    assert is_rejected({"success": False}) is True
    assert is_rejected({"success": True, "orderID": "x"}) is False


@pytest.mark.asyncio
async def test_buy_prices_above_donor_and_aligns_size():
    client = _fake_client()
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_buy("agent-a", "0xc", 0, 0.55, 1.15, token_id="tok-yes")

    args = _submitted_args(client)
    assert result.success is True
    assert args.price == 0.58
    assert args.side == "BUY"
    assert args.token_id == "tok-yes"
    assert is_tick_aligned(args.size, args.price)
    assert args.size * args.price >= 1.15
    assert result.real_price == 0.58
    assert result.real_size == pytest.approx(args.size * 0.58)
    assert result.order_id == "order-1"


@pytest.mark.asyncio
async def test_buy_resolves_token_through_exchange_market_and_caches_it():
    client = _fake_client()
    executor = OrderExecutor({"agent-a": client})

    await executor.execute_buy("agent-a", "0xc", 1, 0.40, 1.15)
    await executor.execute_buy("agent-a", "0xc", 1, 0.40, 1.15)

    assert _submitted_args(client).token_id == "tok-no"
    client.get_market.assert_called_once_with("0xc")


@pytest.mark.asyncio
async def test_rejected_order_reports_failure_without_raising():
    client = _fake_client(post_response={"success": False, "errorMsg": "FOK not filled"})
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_buy("agent-a", "0xc", 0, 0.55, 1.15, token_id="tok-yes")

    assert result.success is False
    assert result.skipped is False
    assert executor.get_status()["stats"]["failures"] == 1


@pytest.mark.asyncio
async def test_client_exception_reports_failure_without_raising():
    client = _fake_client()
    client.post_order.side_effect = RuntimeError("boom")
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_buy("agent-a", "0xc", 0, 0.55, 1.15, token_id="tok-yes")

    assert result.success is False
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_agent_without_client_is_skipped():
    executor = OrderExecutor({})
    result = await executor.execute_buy("agent-a", "0xc", 0, 0.55, 1.15, token_id="tok-yes")
    assert result.skipped is True


@pytest.mark.asyncio
async def test_sell_uses_ledger_shares_and_discounts_price():
    client = _fake_client()
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_sell(
        "agent-a", "0xc", 0, donor_price=0.60, token_id="tok-yes", shares_to_sell=2.2
    )

    args = _submitted_args(client)
    assert result.success is True
    assert args.side == "SELL"
    assert args.price == 0.58
    assert args.size <= 2.2
    assert is_tick_aligned(args.size, args.price)
    client.get_balance_allowance.assert_not_called()


@pytest.mark.asyncio
async def test_sell_queries_conditional_balance_and_live_quote():
    # 3.5 shares held, donor price unusable -> quote 0.45 minus 5 cents.
    client = _fake_client(conditional_balance=3_500_000, quote="0.45")
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_sell("agent-a", "0xc", 0, donor_price=None, token_id="tok-yes")

    args = _submitted_args(client)
    assert result.success is True
    assert args.price == 0.40
    assert args.size == pytest.approx(3.5)


@pytest.mark.asyncio
async def test_sell_skips_dust_balance():
    client = _fake_client(conditional_balance=50)
    executor = OrderExecutor({"agent-a": client})

    result = await executor.execute_sell("agent-a", "0xc", 0, donor_price=0.5, token_id="tok-yes")

    assert result.skipped is True
    client.post_order.assert_not_called()


@pytest.mark.asyncio
async def test_collateral_balances_default_to_zero_on_failure():
    good = _fake_client()
    good.get_balance_allowance.return_value = {"balance": "12500000"}
    bad = _fake_client()
    bad.get_balance_allowance.side_effect = RuntimeError("rpc down")
    executor = OrderExecutor({"agent-a": good, "agent-b": bad})

    balances = await executor.get_collateral_balances()

    assert balances == {"agent-a": 12.5, "agent-b": 0.0}
