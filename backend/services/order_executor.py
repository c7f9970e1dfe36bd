"""
Order Execution - real CLOB orders on behalf of each agent

Turns a replicated open/close into a tick-aligned fill-and-kill order on
the Polymarket CLOB via py-clob-client. Every agent trades from its own
exchange account; agents without configured credentials are skipped.

Real execution is best effort. The virtual ledger has already moved by the
time an order is sent, so failures are logged and reported back as a
failed ExecutionResult; nothing here raises into the caller.

Setup:
1. Set EXCHANGE_ACCOUNTS to a JSON list of
   {"agent_id", "private_key", "api_key", "api_secret", "api_passphrase", "funder"}
2. Set TRADING_ENABLED=true to enable real trading
"""

import asyncio
import time
from typing import Any, Callable, Optional

from config import ExchangeAccount, settings
from models.trade import ExecutionResult
from services.order_precision import (
    buy_limit_price,
    buy_shares,
    sell_limit_price,
    sell_shares,
)
from services.trade_coordinator import ExpiringCache
from utils.logger import get_logger

logger = get_logger("order_executor")

# Conditional-token and collateral balances are reported in 1e6 base units.
BALANCE_UNITS = 1_000_000
KNOWN_SHARES_THRESHOLD = 0.01
DUST_SHARES = 0.0001
_REJECTED_STATUSES = {"error", "rejected"}


def build_clob_client(account: ExchangeAccount):
    """Create an authenticated ClobClient for one agent account."""
    from py_clob_client.client import ClobClient
    from py_clob_client.clob_types import ApiCreds

    funder = (account.funder or "").strip()
    # Proxy (Gnosis safe) wallets sign with type 2 on behalf of the funder.
    signature_type = 2 if len(funder) == 42 else 0
    client = ClobClient(
        settings.CLOB_API_URL,
        key=account.private_key,
        chain_id=settings.CHAIN_ID,
        signature_type=signature_type,
        funder=funder or None,
    )
    if account.api_key and account.api_secret and account.api_passphrase:
        client.set_api_creds(
            ApiCreds(
                api_key=account.api_key,
                api_secret=account.api_secret,
                api_passphrase=account.api_passphrase,
            )
        )
    else:
        client.set_api_creds(client.create_or_derive_api_creds())
    return client


def build_clients_from_settings() -> dict[str, Any]:
    """Per-agent CLOB clients, empty unless trading is explicitly enabled."""
    if not settings.TRADING_ENABLED:
        logger.info("Real trading disabled; ledger-only replication")
        return {}

    clients: dict[str, Any] = {}
    for account in settings.EXCHANGE_ACCOUNTS:
        try:
            clients[account.agent_id] = build_clob_client(account)
            logger.info("Exchange client ready", agent_id=account.agent_id)
        except ImportError:
            logger.error("py-clob-client not installed. Run: pip install py-clob-client")
            return {}
        except Exception as e:
            logger.error(
                "Exchange client init failed",
                agent_id=account.agent_id,
                error=str(e),
            )
    return clients


def is_rejected(response: Any) -> bool:
    """True when a post_order response reports a failed submission."""
    if not isinstance(response, dict):
        return response is None
    if response.get("error"):
        return True
    if str(response.get("status") or "").lower() in _REJECTED_STATUSES:
        return True
    return response.get("success") is False


class OrderExecutor:
    """Submits mirrored orders and queries balances for every agent account."""

    def __init__(
        self,
        clients: Optional[dict[str, Any]] = None,
        token_cache_ttl: Optional[float] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clients: dict[str, Any] = dict(clients or {})
        self._token_cache = ExpiringCache(
            settings.TOKEN_CACHE_TTL_SECONDS if token_cache_ttl is None else token_cache_ttl,
            clock,
        )
        self._timeout = settings.EXCHANGE_TIMEOUT_SECONDS if timeout is None else timeout
        self._stats = {"buys": 0, "sells": 0, "failures": 0}

    # ==================== CLIENTS ====================

    def register_client(self, agent_id: str, client: Any) -> None:
        self._clients[agent_id] = client

    def has_client(self, agent_id: str) -> bool:
        return agent_id in self._clients

    @property
    def agent_ids(self) -> list[str]:
        return list(self._clients)

    async def _call(self, fn: Callable, *args, **kwargs):
        """Run a blocking py-clob-client call off the event loop with a timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=self._timeout
        )

    # ==================== TOKEN RESOLUTION ====================

    async def resolve_token_id(
        self,
        agent_id: str,
        condition_id: str,
        outcome_index: int,
        direct_token_id: Optional[str] = None,
    ) -> Optional[str]:
        key = f"{condition_id}_{outcome_index}"
        if direct_token_id:
            self._token_cache.set(key, direct_token_id)
            return direct_token_id

        cached = self._token_cache.get(key)
        if cached:
            return cached

        client = self._clients.get(agent_id)
        if client is None or not condition_id:
            return None

        market = await self._call(client.get_market, condition_id)
        tokens = (market or {}).get("tokens") or []
        if outcome_index < 0 or outcome_index >= len(tokens):
            return None
        token_id = str(tokens[outcome_index].get("token_id") or "")
        if not token_id:
            return None
        self._token_cache.set(key, token_id)
        return token_id

    # ==================== ORDERS ====================

    async def _submit(self, client: Any, token_id: str, price: float, size: float, side: str):
        from py_clob_client.clob_types import OrderArgs, OrderType

        order_args = OrderArgs(
            token_id=token_id,
            price=price,
            size=size,
            side=side,
            fee_rate_bps=settings.ORDER_FEE_RATE_BPS,
        )
        signed_order = await self._call(client.create_order, order_args)
        return await self._call(client.post_order, signed_order, OrderType.FAK)

    async def execute_buy(
        self,
        agent_id: str,
        condition_id: str,
        outcome_index: int,
        donor_price: float,
        usd_amount: float,
        token_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Buy roughly ``usd_amount`` of the outcome a few cents above the donor."""
        client = self._clients.get(agent_id)
        if client is None:
            return ExecutionResult.skip("no exchange client")

        try:
            from py_clob_client.order_builder.constants import BUY

            resolved = await self.resolve_token_id(agent_id, condition_id, outcome_index, token_id)
            if not resolved:
                return ExecutionResult.skip("token not resolvable")

            order_price = buy_limit_price(donor_price, settings.BUY_PRICE_PREMIUM)
            shares = buy_shares(usd_amount, order_price, settings.MIN_ORDER_USD)
            if shares <= 0:
                return ExecutionResult.skip("no valid order size")

            logger.info(
                "Submitting copy BUY",
                agent_id=agent_id,
                token_id=resolved,
                price=order_price,
                shares=shares,
                cost=round(shares * order_price, 4),
            )
            response = await self._submit(client, resolved, order_price, shares, BUY)
            if is_rejected(response):
                self._stats["failures"] += 1
                logger.error("Copy BUY rejected", agent_id=agent_id, response=response)
                return ExecutionResult.failed(f"rejected: {response}")

            self._stats["buys"] += 1
            order_id = response.get("orderID") if isinstance(response, dict) else None
            logger.info("Copy BUY filled", agent_id=agent_id, order_id=order_id)
            return ExecutionResult(
                success=True,
                real_price=order_price,
                real_size=round(shares * order_price, 6),
                shares=shares,
                order_id=order_id,
            )
        except Exception as e:
            self._stats["failures"] += 1
            logger.error(
                "Copy BUY failed",
                agent_id=agent_id,
                condition_id=condition_id,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
            return ExecutionResult.failed(str(e) or repr(e))

    async def execute_sell(
        self,
        agent_id: str,
        condition_id: str,
        outcome_index: int,
        donor_price: Optional[float] = None,
        token_id: Optional[str] = None,
        shares_to_sell: Optional[float] = None,
    ) -> ExecutionResult:
        """Sell the agent's shares of an outcome a few cents under the donor."""
        client = self._clients.get(agent_id)
        if client is None:
            return ExecutionResult.skip("no exchange client")

        try:
            from py_clob_client.clob_types import AssetType, BalanceAllowanceParams
            from py_clob_client.order_builder.constants import BUY, SELL

            resolved = await self.resolve_token_id(agent_id, condition_id, outcome_index, token_id)
            if not resolved:
                return ExecutionResult.skip("token not resolvable")

            if shares_to_sell and shares_to_sell > KNOWN_SHARES_THRESHOLD:
                # Ledger shares avoid a stale CLOB balance right after the buy.
                held = shares_to_sell
            else:
                allowance = await self._call(
                    client.get_balance_allowance,
                    BalanceAllowanceParams(asset_type=AssetType.CONDITIONAL, token_id=resolved),
                )
                held = float((allowance or {}).get("balance") or 0) / BALANCE_UNITS
                if held <= DUST_SHARES:
                    return ExecutionResult.skip("no shares held")

            live_quote = None
            if donor_price is None or donor_price <= 0.03:
                live_quote = await self._live_quote(client, resolved, BUY)
            order_price = sell_limit_price(
                donor_price,
                live_quote,
                settings.SELL_PRICE_DISCOUNT,
                settings.QUOTE_PRICE_DISCOUNT,
            )
            shares = sell_shares(held, order_price, settings.MIN_ORDER_USD)
            if shares <= 0:
                return ExecutionResult.skip("no valid order size")

            logger.info(
                "Submitting copy SELL",
                agent_id=agent_id,
                token_id=resolved,
                price=order_price,
                shares=shares,
            )
            response = await self._submit(client, resolved, order_price, shares, SELL)
            if is_rejected(response):
                self._stats["failures"] += 1
                logger.error("Copy SELL rejected", agent_id=agent_id, response=response)
                return ExecutionResult.failed(f"rejected: {response}")

            self._stats["sells"] += 1
            order_id = response.get("orderID") if isinstance(response, dict) else None
            logger.info("Copy SELL filled", agent_id=agent_id, order_id=order_id)
            return ExecutionResult(
                success=True,
                real_price=order_price,
                real_size=round(shares * order_price, 6),
                shares=shares,
                order_id=order_id,
            )
        except Exception as e:
            self._stats["failures"] += 1
            logger.error(
                "Copy SELL failed",
                agent_id=agent_id,
                condition_id=condition_id,
                error_type=type(e).__name__,
                error=str(e) or repr(e),
            )
            return ExecutionResult.failed(str(e) or repr(e))

    async def _live_quote(self, client: Any, token_id: str, side: str) -> Optional[float]:
        try:
            response = await self._call(client.get_price, token_id, side)
        except Exception as e:
            logger.warning("Live quote unavailable", token_id=token_id, error=str(e) or repr(e))
            return None
        raw = response.get("price") if isinstance(response, dict) else response
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    # ==================== BALANCES ====================

    async def get_collateral_balances(self) -> dict[str, float]:
        """USDC collateral per agent account; a failing account reports 0."""
        if not self._clients:
            return {}
        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

        async def _one(agent_id: str, client: Any) -> tuple[str, float]:
            try:
                response = await self._call(
                    client.get_balance_allowance,
                    BalanceAllowanceParams(asset_type=AssetType.COLLATERAL),
                )
                return agent_id, float((response or {}).get("balance") or 0) / BALANCE_UNITS
            except Exception as e:
                logger.warning("Collateral balance query failed", agent_id=agent_id, error=str(e) or repr(e))
                return agent_id, 0.0

        results = await asyncio.gather(*(_one(a, c) for a, c in self._clients.items()))
        return dict(results)

    def get_status(self) -> dict:
        return {
            "agents": list(self._clients),
            "token_cache_entries": len(self._token_cache),
            "stats": dict(self._stats),
        }
