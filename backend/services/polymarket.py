import httpx
from typing import Optional

from config import settings
from models import Market
from utils.logger import get_logger

logger = get_logger("polymarket")


class PolymarketClient:
    """Client for the Polymarket data and Gamma APIs.

    Every call carries an explicit timeout and raises on non-2xx responses;
    callers decide whether a failure skips a wallet or a market for the
    current cycle.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.gamma_url = settings.GAMMA_API_URL
        self.data_url = settings.DATA_API_URL
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ==================== DATA API ====================

    async def get_wallet_activity(
        self,
        address: str,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[dict]:
        """Recent activity records (trades, splits, redeems...) for a wallet."""
        client = await self._get_client()
        response = await client.get(
            f"{self.data_url}/activity",
            params={"user": address, "limit": limit or settings.ACTIVITY_FETCH_LIMIT},
            timeout=timeout or settings.ACTIVITY_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError(f"Unexpected activity payload type: {type(data).__name__}")
        return [row for row in data if isinstance(row, dict)]

    # ==================== GAMMA API ====================

    async def get_market_by_condition_id(
        self, condition_id: str, timeout: Optional[float] = None
    ) -> Optional[Market]:
        """Market metadata for one condition id, or None when Gamma has no match."""
        client = await self._get_client()
        response = await client.get(
            f"{self.gamma_url}/markets",
            params={"condition_ids": condition_id, "limit": 1},
            timeout=timeout or settings.MARKET_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        for row in response.json() or []:
            if not isinstance(row, dict):
                continue
            market = Market.from_gamma_response(row)
            if market.condition_id.lower() == condition_id.lower():
                return market
        return None

    async def get_market_by_token_id(
        self, token_id: str, timeout: Optional[float] = None
    ) -> Optional[Market]:
        """Reverse lookup: which market owns this CLOB token."""
        client = await self._get_client()
        response = await client.get(
            f"{self.gamma_url}/markets",
            params={"clob_token_ids": token_id, "limit": 1},
            timeout=timeout or settings.TOKEN_LOOKUP_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        for row in response.json() or []:
            if not isinstance(row, dict):
                continue
            market = Market.from_gamma_response(row)
            if market.condition_id:
                return market
        return None
