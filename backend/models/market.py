import json
from typing import Optional

from pydantic import BaseModel

# An outcome priced at or above this on a closed market is the winner.
RESOLVED_PRICE_THRESHOLD = 0.99


def _parse_maybe_json_list(raw: object) -> list[object]:
    """Accept list values directly or parse JSON-encoded list strings."""
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, tuple):
        return list(raw)
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return []
        if isinstance(parsed, list):
            return parsed
    return []


class Market(BaseModel):
    """Market metadata as returned by the Gamma ``/markets`` endpoint."""

    id: str = ""
    condition_id: str = ""
    question: str = ""
    slug: str = ""
    clob_token_ids: list[str] = []
    outcome_prices: list[float] = []
    outcomes: list[str] = []
    closed: bool = False
    neg_risk: bool = False

    @classmethod
    def from_gamma_response(cls, data: dict) -> "Market":
        """Parse market from Gamma API response"""
        clob_token_ids: list[str] = []
        for token_id in _parse_maybe_json_list(
            data.get("clobTokenIds", data.get("clob_token_ids"))
        ):
            token_text = str(token_id or "").strip()
            if token_text:
                clob_token_ids.append(token_text)

        # Unparseable entries keep their slot so indexes still line up
        # with outcomes and token ids.
        outcome_prices: list[float] = []
        for price in _parse_maybe_json_list(
            data.get("outcomePrices", data.get("outcome_prices"))
        ):
            try:
                outcome_prices.append(float(price))
            except (TypeError, ValueError):
                outcome_prices.append(0.0)

        outcomes = [
            str(o) for o in _parse_maybe_json_list(data.get("outcomes")) if o is not None
        ]

        return cls(
            id=str(data.get("id", "")),
            condition_id=str(data.get("conditionId", data.get("condition_id", "")) or ""),
            question=data.get("question", "") or "",
            slug=data.get("slug", "") or "",
            clob_token_ids=clob_token_ids,
            outcome_prices=outcome_prices,
            outcomes=outcomes,
            closed=bool(data.get("closed", False)),
            neg_risk=bool(data.get("negRisk", data.get("neg_risk", False))),
        )

    def winner_index(self) -> Optional[int]:
        """Index of the winning outcome, or None while the market is live.

        A market counts as resolved only when it is closed and one of its
        outcome prices has settled at or above 0.99.
        """
        if not self.closed:
            return None
        for index, price in enumerate(self.outcome_prices):
            if price >= RESOLVED_PRICE_THRESHOLD:
                return index
        return None

    def outcome_index_for_token(self, token_id: str) -> Optional[int]:
        """Position of ``token_id`` in the market's CLOB token list."""
        try:
            return self.clob_token_ids.index(str(token_id))
        except ValueError:
            return None
