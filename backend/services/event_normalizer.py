"""
Activity record -> TradeIntent normalization.

The venue's activity payloads carry the market only as loose hints (icon
URL, slug, title, outcome label). Asset and side are recovered through
ordered rule tables: the first rule whose pattern matches wins, so the
precedence is visible in the data rather than buried in nested branches.
Everything here is pure; no I/O and no clock reads unless a record lacks
its own timestamp.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from config import settings
from models.trade import (
    Direction,
    IntentSource,
    OrderAction,
    OutcomeSide,
    TradeIntent,
)
from utils.market_urls import build_polymarket_market_url
from utils.utcnow import epoch_seconds, utcfromtimestamp
from utils.validation import parse_price

DEFAULT_ASSET = "POLY"
DEFAULT_TITLE = "Polymarket Trade"
DEFAULT_PRICE = 0.5
DEFAULT_MARKET_DURATION = timedelta(hours=24)

# (source field getter, pattern, asset) - first match wins.
_Rule = tuple[Callable[[dict], str], "re.Pattern[str]", Optional[str]]


def _icon(record: dict) -> str:
    return str(record.get("icon") or record.get("image") or "")


def _slug(record: dict) -> str:
    return str(record.get("eventSlug") or record.get("slug") or "")


def _title(record: dict) -> str:
    return str(record.get("title") or record.get("market") or "")


# Icon URLs look like ".../BTC+fullsize.png"; the ticker is case-sensitive.
ASSET_RULES: list[_Rule] = [
    (_icon, re.compile(r"/([A-Z]{2,5})[+ ]"), None),
    (_slug, re.compile(r"\bbtc\b", re.IGNORECASE), "BTC"),
    (_slug, re.compile(r"\beth\b", re.IGNORECASE), "ETH"),
    (_slug, re.compile(r"\bsol\b", re.IGNORECASE), "SOL"),
    (_slug, re.compile(r"\bxrp\b", re.IGNORECASE), "XRP"),
    (_title, re.compile(r"bitcoin|btc", re.IGNORECASE), "BTC"),
    (_title, re.compile(r"ethereum|eth", re.IGNORECASE), "ETH"),
    (_title, re.compile(r"solana|sol", re.IGNORECASE), "SOL"),
    (_title, re.compile(r"xrp|ripple", re.IGNORECASE), "XRP"),
]

SIDE_LABELS: list[tuple[frozenset, OutcomeSide]] = [
    (frozenset({"yes", "up", "higher", "above"}), OutcomeSide.YES),
    (frozenset({"no", "down", "lower", "below"}), OutcomeSide.NO),
]

_DURATION_RE = re.compile(r"[_-](\d+)(m|h|d)[_-]", re.IGNORECASE)
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days"}
_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


def extract_asset(record: dict) -> str:
    """Best-effort asset ticker for a market."""
    for getter, pattern, asset in ASSET_RULES:
        match = pattern.search(getter(record))
        if match:
            return asset or match.group(1)

    words = _title(record).split()
    if not words:
        return DEFAULT_ASSET
    cleaned = _NON_ALNUM_RE.sub("", words[0]).upper()[:4]
    return cleaned or DEFAULT_ASSET


def extract_side(record: dict) -> OutcomeSide:
    """YES/NO from the outcome label, else from outcome-index parity."""
    label = str(record.get("outcome") or "").strip().lower()
    for labels, side in SIDE_LABELS:
        if label in labels:
            return side
    return OutcomeSide.YES if _outcome_index(record) == 0 else OutcomeSide.NO


def estimate_market_end(slug: str, opened_at: datetime) -> datetime:
    """Open time plus the duration token in the slug ("-15m-", "_1h_"), else +24h."""
    match = _DURATION_RE.search(slug or "")
    if match:
        amount = int(match.group(1))
        unit = _DURATION_UNITS[match.group(2).lower()]
        return opened_at + timedelta(**{unit: amount})
    return opened_at + DEFAULT_MARKET_DURATION


def _outcome_index(record: dict) -> int:
    try:
        return int(record.get("outcomeIndex") or 0)
    except (TypeError, ValueError):
        return 0


def _timestamp(record: dict) -> int:
    raw = record.get("timestamp")
    try:
        ts = int(float(raw))
    except (TypeError, ValueError):
        return epoch_seconds()
    # Some feeds report milliseconds.
    if ts > 10**12:
        ts //= 1000
    return ts


def normalize_activity(
    wallet: str, record: dict, source: IntentSource = IntentSource.POLL
) -> Optional[TradeIntent]:
    """Convert one raw activity record into a TradeIntent.

    Returns None for records that are not BUY/SELL trades.
    """
    if not isinstance(record, dict):
        return None
    try:
        action = OrderAction(str(record.get("side") or "").strip().upper())
    except ValueError:
        return None

    condition_id = str(record.get("conditionId") or record.get("condition_id") or "")
    outcome_index = _outcome_index(record)
    activity_ts = _timestamp(record)
    opened_at = utcfromtimestamp(activity_ts)
    tx_hash = str(record.get("transactionHash") or f"{condition_id}_{record.get('timestamp')}")
    slug = _slug(record)
    side = extract_side(record)
    token_id = str(record.get("asset") or "") or None

    return TradeIntent(
        wallet=(wallet or "").lower(),
        action=action,
        condition_id=condition_id,
        outcome_index=outcome_index,
        price=parse_price(record.get("price"), DEFAULT_PRICE),
        activity_ts=activity_ts,
        opened_at=opened_at,
        tx_hash=tx_hash,
        side=side,
        direction=Direction.UP if side == OutcomeSide.YES else Direction.DOWN,
        asset=extract_asset(record),
        title=_title(record) or DEFAULT_TITLE,
        slug=slug,
        market_url=build_polymarket_market_url(slug, settings.MARKET_PAGE_URL),
        icon=_icon(record),
        market_end=estimate_market_end(slug, opened_at),
        token_id=token_id,
        source=source,
    )
