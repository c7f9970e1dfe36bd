from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

POLYMARKET_BASE_URL = "https://polymarket.com"

_POLYMARKET_SLUG_RE = re.compile(r"^(?=.*[a-z0-9])[a-z0-9-]+$")


def _clean_segment(value: Any) -> str:
    return str(value or "").strip().strip("/")


def build_polymarket_market_url(slug: Any, base_url: str = POLYMARKET_BASE_URL) -> str:
    """Event page for a slug, or the site root when the slug is unusable."""
    base = base_url.rstrip("/") or POLYMARKET_BASE_URL
    cleaned = _clean_segment(slug).lower()
    if not cleaned or not _POLYMARKET_SLUG_RE.fullmatch(cleaned):
        return base
    return f"{base}/event/{quote(cleaned, safe='-')}"
