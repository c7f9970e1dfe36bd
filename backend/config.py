import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()
_PROJECT_ROOT = _BACKEND_DIR.parent.resolve()
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "copy_ledger.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class DonorEntry(BaseModel):
    """One donor wallet pair mirrored by a single agent."""

    agent_id: str
    proxy_wallet: str = ""
    onchain_wallet: str = ""


class ExchangeAccount(BaseModel):
    """Signing credentials for one agent's exchange account."""

    agent_id: str
    private_key: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    api_passphrase: Optional[str] = None
    funder: Optional[str] = None


class Settings(BaseSettings):
    # API Base URLs
    GAMMA_API_URL: str = "https://gamma-api.polymarket.com"
    CLOB_API_URL: str = "https://clob.polymarket.com"
    DATA_API_URL: str = "https://data-api.polymarket.com"
    MARKET_PAGE_URL: str = "https://polymarket.com"

    # WebSocket URLs
    ACTIVITY_WS_URL: str = "wss://ws-live-data.polymarket.com"
    POLYGON_WS_URL: str = "wss://polygon-bor-rpc.publicnode.com"

    # Ingestion sources
    ACTIVITY_STREAM_ENABLED: bool = True
    ONCHAIN_LISTENER_ENABLED: bool = True
    POLL_INTERVAL_SECONDS: float = 3.0
    ACTIVITY_FETCH_LIMIT: int = 100
    INITIAL_LOOKBACK_SECONDS: int = 30
    STREAM_HEARTBEAT_SECONDS: float = 5.0
    STREAM_RECONNECT_BASE_SECONDS: float = 1.0
    STREAM_RECONNECT_MAX_SECONDS: float = 60.0
    CHAIN_RECONNECT_BASE_SECONDS: float = 3.0
    CHAIN_RECONNECT_MAX_SECONDS: float = 30.0

    # HTTP timeouts (seconds)
    ACTIVITY_TIMEOUT_SECONDS: float = 12.0
    MARKET_TIMEOUT_SECONDS: float = 8.0
    TOKEN_LOOKUP_TIMEOUT_SECONDS: float = 6.0
    EXCHANGE_TIMEOUT_SECONDS: float = 10.0

    # Agents and donors
    # JSON object: {"agent_id": "0x..."} - the agents' own trading wallets
    AGENT_WALLETS: dict[str, str] = {}
    # JSON list of DonorEntry objects
    DONORS: list[DonorEntry] = []
    STARTING_BALANCE_USD: float = 1000.0

    # Sizing
    COPY_BASE_SIZE_USD: float = 1.10
    COPY_SIZE_JITTER_USD: float = 0.20
    MIN_AGENT_BALANCE_USD: float = 1.0
    ONCHAIN_COPY_SIZE_USD: float = 1.15
    MIN_ORDER_USD: float = 1.01
    BUY_PRICE_PREMIUM: float = 0.03
    SELL_PRICE_DISCOUNT: float = 0.02
    QUOTE_PRICE_DISCOUNT: float = 0.05
    ORDER_FEE_RATE_BPS: int = 1000

    # Locks and caches (seconds)
    LOCK_GRACE_SECONDS: float = 5.0
    PRE_EXECUTED_TTL_SECONDS: float = 60.0
    TOKEN_CACHE_TTL_SECONDS: float = 3600.0

    # Periodic jobs (seconds)
    RESOLUTION_POLL_INTERVAL_SECONDS: float = 15.0
    EQUITY_SNAPSHOT_INTERVAL_SECONDS: float = 60.0
    BALANCE_SYNC_INTERVAL_SECONDS: float = 20.0
    BALANCE_SYNC_DELAYS_SECONDS: list[float] = [4.0, 15.0]

    # Database
    DATABASE_URL: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    # Trading Configuration
    TRADING_ENABLED: bool = False  # Must be explicitly enabled
    CHAIN_ID: int = 137  # Polygon mainnet
    EXCHANGE_ACCOUNTS: list[ExchangeAccount] = []

    @field_validator(
        "GAMMA_API_URL",
        "CLOB_API_URL",
        "DATA_API_URL",
        "MARKET_PAGE_URL",
        "ACTIVITY_WS_URL",
        "POLYGON_WS_URL",
        mode="before",
    )
    @classmethod
    def _normalize_url_field(cls, value: object) -> object:
        """Trim accidental quotes/whitespace from URL env vars."""
        if value is None:
            return value
        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text
        return text.rstrip("/")

    @field_validator("AGENT_WALLETS", mode="before")
    @classmethod
    def _normalize_agent_wallets(cls, value: object) -> object:
        """Accept a JSON string and lowercase every wallet."""
        if isinstance(value, str):
            text = value.strip()
            value = json.loads(text) if text else {}
        if isinstance(value, dict):
            return {
                str(agent).strip(): str(wallet or "").strip().lower()
                for agent, wallet in value.items()
                if str(agent).strip()
            }
        return value

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Resolve relative SQLite paths against the project root."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{_SQLITE_ASYNC_PREFIX}:memory:"
            absolute = (
                Path(path_part).resolve()
                if path_part.startswith("/")
                else (_PROJECT_ROOT / path_part).resolve()
            )
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning(
                    "Could not create database directory",
                    extra={"path": str(absolute.parent), "error": str(exc)},
                )
            # Always run on the async driver.
            return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

        return text

    @property
    def agent_ids(self) -> list[str]:
        """Every agent that owns a ledger row, in configuration order."""
        ordered: list[str] = []
        for agent_id in list(self.AGENT_WALLETS) + [d.agent_id for d in self.DONORS]:
            if agent_id and agent_id not in ordered:
                ordered.append(agent_id)
        return ordered

    class Config:
        # Load project-root .env first, then backend/.env as an override.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
