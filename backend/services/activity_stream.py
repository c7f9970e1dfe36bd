"""Donor activity via Polymarket's Real Time Data Stream (RTDS).

Subscribes to ``wss://ws-live-data.polymarket.com`` topics:
  - ``activity/trades`` - every matched trade on the venue
  - ``activity/orders_matched`` - order matches, same payload shape

Only payloads whose ``proxyWallet`` belongs to a donor or one of our own
agents are forwarded. The stream is an accelerator on top of REST polling:
when it is down the poller still covers every wallet.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Awaitable, Callable, Optional

import websockets

from config import settings
from models.trade import IntentSource, TradeIntent
from services.event_normalizer import normalize_activity
from services.trade_coordinator import TradeCoordinator
from services.wallet_classifier import WalletClassifier
from utils.logger import get_logger
from utils.retry import RetryPolicy, sleep_or_stop

logger = get_logger("activity_stream")

ACTIVITY_TOPIC = "activity"
ACTIVITY_TYPES = ("trades", "orders_matched")

Dispatch = Callable[[TradeIntent], Awaitable[object]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class ActivityStream:
    def __init__(
        self,
        classifier: WalletClassifier,
        coordinator: TradeCoordinator,
        dispatch: Dispatch,
        ws_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.classifier = classifier
        self.coordinator = coordinator
        self.dispatch = dispatch
        self._ws_url = ws_url or settings.ACTIVITY_WS_URL
        self._retry = retry_policy or RetryPolicy(
            base_delay=settings.STREAM_RECONNECT_BASE_SECONDS,
            multiplier=2.0,
            max_delay=settings.STREAM_RECONNECT_MAX_SECONDS,
        )
        self._heartbeat_interval = (
            settings.STREAM_HEARTBEAT_SECONDS if heartbeat_interval is None else heartbeat_interval
        )
        self._state = ConnectionState.CLOSED
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._status_callbacks: list[Callable[[ConnectionState], None]] = []
        self._stats = {"messages": 0, "forwarded": 0, "reconnects": 0, "errors": 0}

    @property
    def state(self) -> ConnectionState:
        return self._state

    def on_status_change(self, callback: Callable[[ConnectionState], None]) -> None:
        self._status_callbacks.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.info("Activity stream state changed", state=state.value)
        for callback in self._status_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.warning("Status callback failed", error=str(e))

    # ==================== LIFECYCLE ====================

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Activity stream starting", url=self._ws_url)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._set_state(ConnectionState.CLOSED)

    def subscribe_message(self) -> str:
        return json.dumps(
            {
                "action": "subscribe",
                "subscriptions": [
                    {"topic": ACTIVITY_TOPIC, "type": kind} for kind in ACTIVITY_TYPES
                ],
            }
        )

    async def _heartbeat(self, ws) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await ws.send("PING")

    async def _run_loop(self) -> None:
        """Reconnecting WebSocket loop."""
        attempt = 0
        while not self._stop_event.is_set():
            self._set_state(ConnectionState.CONNECTING)
            heartbeat: Optional[asyncio.Task] = None
            try:
                async with websockets.connect(
                    self._ws_url,
                    ping_interval=20,
                    ping_timeout=10,
                    close_timeout=5,
                ) as ws:
                    attempt = 0
                    await ws.send(self.subscribe_message())
                    self._set_state(ConnectionState.CONNECTED)
                    heartbeat = asyncio.create_task(self._heartbeat(ws))

                    async for raw in ws:
                        if self._stop_event.is_set():
                            break
                        await self.handle_message(raw)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats["errors"] += 1
                logger.warning(
                    "Activity stream connection lost",
                    error_type=type(e).__name__,
                    error=str(e) or repr(e),
                )
            finally:
                if heartbeat is not None:
                    heartbeat.cancel()

            if self._stop_event.is_set():
                break
            self._set_state(ConnectionState.DISCONNECTED)
            attempt += 1
            self._stats["reconnects"] += 1
            delay = self._retry.delay_for(attempt)
            logger.info("Activity stream reconnecting", attempt=attempt, delay=delay)
            if await sleep_or_stop(self._stop_event, delay):
                break

    # ==================== MESSAGES ====================

    async def handle_message(self, raw: str | bytes) -> Optional[TradeIntent]:
        """Parse one RTDS frame and forward it when it concerns a watched wallet."""
        text = raw if isinstance(raw, str) else raw.decode("utf-8", errors="replace")
        if not text.strip() or text.strip().upper() == "PONG":
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or data.get("topic") != ACTIVITY_TOPIC:
            return None
        self._stats["messages"] += 1

        payload = data.get("payload")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                return None
        if not isinstance(payload, dict):
            return None

        wallet = str(payload.get("proxyWallet") or "").lower()
        if not wallet or wallet not in self.classifier.watched_wallets():
            return None

        intent = normalize_activity(wallet, payload, IntentSource.STREAM)
        if intent is None:
            return None

        logger.info(
            "Stream trade for watched wallet",
            wallet=wallet,
            action=intent.action.value,
            condition_id=intent.condition_id,
            price=intent.price,
        )
        try:
            await self.dispatch(intent)
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Stream dispatch failed", wallet=wallet, error=str(e) or repr(e))
            return None
        self._stats["forwarded"] += 1
        self.coordinator.advance_cursor(wallet, intent.activity_ts)
        return intent

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "url": self._ws_url,
            "stats": dict(self._stats),
        }
