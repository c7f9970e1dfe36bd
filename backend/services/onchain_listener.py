"""
On-chain fill listener for donor wallets.

Subscribes over a Polygon WebSocket RPC to ``OrderFilled`` logs emitted by
the Polymarket CTF Exchange and NegRisk Exchange contracts. A fill that
involves a donor wallet is visible here roughly a second before the venue's
own feeds index it, so the real copy order is sent straight away and the
transaction is marked as pre-executed. When the same trade later arrives via
polling or streaming, the ledger is updated as usual but no second real
order is sent.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Optional

import websockets

from config import settings
from models.trade import OrderAction
from services.order_executor import OrderExecutor
from services.polymarket import PolymarketClient
from services.trade_coordinator import ExpiringCache, TradeCoordinator
from services.wallet_classifier import WalletClassifier
from utils.logger import get_logger
from utils.retry import RetryPolicy, sleep_or_stop
from utils.validation import is_tradable_price

logger = get_logger("onchain_listener")

# ==================== CONSTANTS ====================

# Polymarket exchange contracts on Polygon
CTF_EXCHANGE_ADDRESS = "0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E"
NEGRISK_EXCHANGE_ADDRESS = "0xC5d563A36AE78145C45a50134d48A1215220f80a"

# OrderFilled(bytes32,address,address,uint256,uint256,uint256,uint256,uint256)
# keccak256 topic hash
ORDER_FILLED_TOPIC = (
    "0xd0a08e8c493f9c94f29311604c9de1b4e8c8d4c06bd0c789af57f2d65bfec0f6"
)

# Asset id 0 is USDC collateral; anything else is a conditional token.
COLLATERAL_ASSET_ID = 0
TOKEN_LOOKUP_TTL_SECONDS = 3600.0


# ==================== DATA MODEL ====================


@dataclass(frozen=True)
class OrderFill:
    tx_hash: str
    maker: str
    taker: str
    maker_asset_id: int
    taker_asset_id: int
    maker_amount_filled: int
    taker_amount_filled: int
    fee: int = 0


@dataclass(frozen=True)
class DonorFill:
    """An OrderFilled log seen from the donor's side of the trade."""

    tx_hash: str
    wallet: str
    action: OrderAction
    token_id: str
    price: float


# ==================== HELPERS ====================


def _decode_uint256(hex_str: str) -> int:
    """Decode a 256-bit unsigned integer from a hex-encoded ABI word."""
    return int(hex_str, 16)


def _exception_text(exc: BaseException) -> str:
    """Return a non-empty exception string for structured logging."""
    text = str(exc).strip()
    return text if text else repr(exc)


def _decode_address_from_topic(topic_hex: str) -> str:
    """Extract an Ethereum address from a 32-byte ABI-encoded word.

    Addresses are left-padded with zeros in indexed event topics.
    """
    clean = topic_hex.lower().replace("0x", "")
    return "0x" + clean[-40:]


def parse_order_filled_log(log: dict) -> Optional[OrderFill]:
    """Decode an OrderFilled log.

    Exchange layout: maker and taker are indexed (topics[2], topics[3]) and
    the data field holds five words: makerAssetId, takerAssetId,
    makerAmountFilled, takerAmountFilled, fee. Logs with only the order hash
    indexed carry maker and taker as the first two data words instead.
    """
    topics = log.get("topics") or []
    data = log.get("data") or "0x"
    data_hex = data[2:] if data.startswith("0x") else data
    words = [data_hex[i : i + 64] for i in range(0, len(data_hex) - len(data_hex) % 64, 64)]

    if len(topics) >= 4 and len(words) >= 5:
        maker = _decode_address_from_topic(topics[2])
        taker = _decode_address_from_topic(topics[3])
        amounts = words[:5]
    elif len(topics) >= 2 and len(words) >= 7:
        maker = _decode_address_from_topic(words[0])
        taker = _decode_address_from_topic(words[1])
        amounts = words[2:7]
    else:
        return None

    try:
        values = [_decode_uint256(word) for word in amounts]
    except ValueError:
        return None

    return OrderFill(
        tx_hash=str(log.get("transactionHash") or "").lower(),
        maker=maker,
        taker=taker,
        maker_asset_id=values[0],
        taker_asset_id=values[1],
        maker_amount_filled=values[2],
        taker_amount_filled=values[3],
        fee=values[4],
    )


def donor_view(fill: OrderFill, donor_wallets) -> Optional[DonorFill]:
    """Side, token and price of ``fill`` from the donor's perspective."""
    if fill.maker in donor_wallets:
        wallet = fill.maker
        gives_usdc = fill.maker_asset_id == COLLATERAL_ASSET_ID
    elif fill.taker in donor_wallets:
        wallet = fill.taker
        gives_usdc = fill.taker_asset_id == COLLATERAL_ASSET_ID
    else:
        return None

    maker_is_usdc = fill.maker_asset_id == COLLATERAL_ASSET_ID
    usdc_amount = fill.maker_amount_filled if maker_is_usdc else fill.taker_amount_filled
    ctf_amount = fill.taker_amount_filled if maker_is_usdc else fill.maker_amount_filled
    token_id = fill.taker_asset_id if maker_is_usdc else fill.maker_asset_id
    if ctf_amount == 0 or token_id == COLLATERAL_ASSET_ID:
        return None

    price = usdc_amount / ctf_amount
    if not is_tradable_price(price):
        return None

    return DonorFill(
        tx_hash=fill.tx_hash,
        wallet=wallet,
        action=OrderAction.BUY if gives_usdc else OrderAction.SELL,
        token_id=str(token_id),
        price=price,
    )


# ==================== LISTENER ====================


class OnChainListener:
    """Copies donor fills straight from exchange logs."""

    def __init__(
        self,
        classifier: WalletClassifier,
        coordinator: TradeCoordinator,
        executor: OrderExecutor,
        client: PolymarketClient,
        ws_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        copy_size_usd: Optional[float] = None,
    ):
        self.classifier = classifier
        self.coordinator = coordinator
        self.executor = executor
        self.client = client
        self._ws_url = ws_url or settings.POLYGON_WS_URL
        self._retry = retry_policy or RetryPolicy(
            base_delay=settings.CHAIN_RECONNECT_BASE_SECONDS,
            multiplier=2.0,
            max_delay=settings.CHAIN_RECONNECT_MAX_SECONDS,
        )
        self._copy_size = settings.ONCHAIN_COPY_SIZE_USD if copy_size_usd is None else copy_size_usd
        self._token_markets = ExpiringCache(TOKEN_LOOKUP_TTL_SECONDS)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._fill_tasks: set[asyncio.Task] = set()
        self._ws_connection = None
        self._stats = {
            "logs": 0,
            "donor_fills": 0,
            "pre_executed": 0,
            "unresolved_tokens": 0,
            "ws_reconnects": 0,
            "errors": 0,
        }

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.warning("On-chain listener already running")
            return
        if not self.classifier.roster.donor_wallets:
            logger.info("No donor wallets; on-chain listener idle")
        self._stop_event.clear()
        self._task = asyncio.create_task(self._ws_loop())
        logger.info("Started on-chain listener", ws_url=self._ws_url)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        for task in list(self._fill_tasks):
            task.cancel()
        logger.info("Stopped on-chain listener", stats=self._stats)

    def subscribe_message(self) -> str:
        return json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_subscribe",
                "params": [
                    "logs",
                    {
                        "address": [CTF_EXCHANGE_ADDRESS, NEGRISK_EXCHANGE_ADDRESS],
                        "topics": [ORDER_FILLED_TOPIC],
                    },
                ],
            }
        )

    # ==================== WEBSOCKET LOOP ====================

    async def _ws_loop(self) -> None:
        """Subscribe to exchange logs, reconnecting with capped backoff."""
        attempt = 0
        while not self._stop_event.is_set():
            try:
                logger.info("Connecting to Polygon WS RPC", url=self._ws_url)
                async with websockets.connect(
                    self._ws_url,
                    ping_interval=20,
                    ping_timeout=30,
                    close_timeout=10,
                ) as ws:
                    self._ws_connection = ws
                    await ws.send(self.subscribe_message())
                    sub_result = json.loads(await ws.recv())
                    if "error" in sub_result:
                        raise ConnectionError(f"Subscription failed: {sub_result['error']}")
                    attempt = 0
                    logger.info(
                        "Subscribed to exchange OrderFilled logs",
                        subscription_id=sub_result.get("result"),
                    )

                    async for message in ws:
                        if self._stop_event.is_set():
                            break
                        try:
                            data = json.loads(message)
                        except json.JSONDecodeError:
                            self._stats["errors"] += 1
                            continue
                        log = (data.get("params") or {}).get("result")
                        if isinstance(log, dict):
                            self.handle_log(log)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["ws_reconnects"] += 1
                logger.warning(
                    "Polygon WS connection lost, will reconnect",
                    error_type=type(e).__name__,
                    error=_exception_text(e),
                )
            finally:
                self._ws_connection = None

            if self._stop_event.is_set():
                break
            attempt += 1
            if await sleep_or_stop(self._stop_event, self._retry.delay_for(attempt)):
                break

    # ==================== LOG PROCESSING ====================

    def handle_log(self, log: dict) -> Optional[DonorFill]:
        """Claim a donor fill and copy it in the background."""
        self._stats["logs"] += 1
        if log.get("removed"):
            return None
        fill = parse_order_filled_log(log)
        if fill is None or not fill.tx_hash:
            return None
        donor_fill = donor_view(fill, self.classifier.roster.donor_wallets)
        if donor_fill is None:
            return None
        self._stats["donor_fills"] += 1
        # Claim before any await so a feed arriving mid-lookup sees the mark.
        if not self.coordinator.mark_pre_executed(donor_fill.tx_hash):
            return None
        logger.info(
            "Donor fill on-chain",
            wallet=donor_fill.wallet,
            action=donor_fill.action.value,
            price=round(donor_fill.price, 4),
            tx_hash=donor_fill.tx_hash,
        )
        task = asyncio.create_task(self.copy_fill(donor_fill))
        self._fill_tasks.add(task)
        task.add_done_callback(self._fill_tasks.discard)
        return donor_fill

    async def lookup_token(self, token_id: str) -> Optional[tuple[str, int]]:
        """(condition_id, outcome_index) for a CLOB token, cached for an hour."""
        cached = self._token_markets.get(token_id)
        if cached is not None:
            return cached
        try:
            market = await self.client.get_market_by_token_id(token_id)
        except Exception as e:
            logger.warning("Token lookup failed", token_id=token_id, error=_exception_text(e))
            return None
        if market is None:
            return None
        index = market.outcome_index_for_token(token_id)
        result = (market.condition_id, 0 if index is None else index)
        self._token_markets.set(token_id, result)
        return result

    async def copy_fill(self, fill: DonorFill) -> int:
        """Send the real copy order for every agent mirroring this donor."""
        market = await self.lookup_token(fill.token_id)
        if market is None:
            self._stats["unresolved_tokens"] += 1
            logger.warning("Could not resolve token; skipping fill", token_id=fill.token_id)
            return 0
        condition_id, outcome_index = market

        agents = [a for a in self.classifier.agents_for_donor(fill.wallet) if self.executor.has_client(a)]
        if not agents:
            return 0

        if fill.action == OrderAction.BUY:
            calls = [
                self.executor.execute_buy(
                    agent_id, condition_id, outcome_index, fill.price, self._copy_size, token_id=fill.token_id
                )
                for agent_id in agents
            ]
        else:
            calls = [
                self.executor.execute_sell(
                    agent_id, condition_id, outcome_index, donor_price=fill.price, token_id=fill.token_id
                )
                for agent_id in agents
            ]
        results = await asyncio.gather(*calls, return_exceptions=True)
        succeeded = sum(1 for r in results if not isinstance(r, BaseException) and r.success)
        self._stats["pre_executed"] += succeeded
        return succeeded

    def get_status(self) -> dict:
        return {
            "running": self._task is not None and not self._task.done(),
            "ws_connected": self._ws_connection is not None,
            "ws_url": self._ws_url,
            "tracked_wallets": len(self.classifier.roster.donor_wallets),
            "stats": dict(self._stats),
        }
