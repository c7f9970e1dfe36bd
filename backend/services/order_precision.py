"""
Order size and price precision for the CLOB.

The exchange only accepts orders whose share amount, in 1/10000 share
units, is a multiple of ``10000 / gcd(price_cents, 10000)``. All math is
done in Decimal so sizes land exactly on the tick grid.
"""

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from math import gcd
from typing import Optional

SHARE_UNITS = 10000
MIN_ORDER_USD = Decimal("1.01")
MIN_SELL_COST_USD = Decimal("1.00")
MAX_PRICE = Decimal("0.99")
MIN_PRICE = Decimal("0.01")
CENT = Decimal("0.01")


def _dec(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def size_step(price: float) -> int:
    """Tick step in 1/10000 share units for ``price``."""
    price_int = int(_cents(_dec(price)) * 100)
    return SHARE_UNITS // gcd(abs(price_int), SHARE_UNITS)


def is_tick_aligned(shares: float, price: float) -> bool:
    units = _dec(shares) * SHARE_UNITS
    return units == units.to_integral_value() and int(units) % size_step(price) == 0


def _units_to_shares(units: int) -> float:
    return float(Decimal(units) / SHARE_UNITS)


def _min_viable_units(target: Decimal, price: Decimal, step: int) -> int:
    steps = (target * SHARE_UNITS / (price * step)).to_integral_value(rounding=ROUND_CEILING)
    return int(steps) * step


def buy_shares(target_usd: float, price: float, min_order_usd: float = float(MIN_ORDER_USD)) -> float:
    """Smallest tick-aligned share amount costing at least ``max(target, minimum)``."""
    p = _dec(price)
    if p <= 0:
        return 0.0
    step = size_step(price)
    target = max(_dec(target_usd), _dec(min_order_usd))
    return _units_to_shares(_min_viable_units(target, p, step))


def sell_shares(balance: float, price: float, min_order_usd: float = float(MIN_ORDER_USD)) -> float:
    """Largest tick-aligned share amount not exceeding ``balance``.

    When that amount would cost less than $1.00 the minimum viable size is
    used instead, provided the balance covers it. Returns 0.0 when no
    tick-aligned order is possible.
    """
    p = _dec(price)
    held = _dec(balance)
    if p <= 0 or held <= 0:
        return 0.0
    step = size_step(price)
    max_units = int((held * SHARE_UNITS / step).to_integral_value(rounding=ROUND_FLOOR)) * step
    if max_units > 0 and Decimal(max_units) / SHARE_UNITS * p >= MIN_SELL_COST_USD:
        return _units_to_shares(max_units)

    min_units = _min_viable_units(_dec(min_order_usd), p, step)
    if Decimal(min_units) / SHARE_UNITS <= held:
        return _units_to_shares(min_units)
    return 0.0


def buy_limit_price(donor_price: float, premium: float = 0.03) -> float:
    """Donor price plus a premium, in cents, capped at 0.99."""
    return float(min(MAX_PRICE, _cents(_dec(donor_price) + _dec(premium))))


def sell_limit_price(
    donor_price: Optional[float],
    live_quote: Optional[float] = None,
    discount: float = 0.02,
    quote_discount: float = 0.05,
) -> float:
    """Sell price under the donor's fill, else under the live quote, floored at 0.01."""
    if donor_price is not None and _dec(donor_price) > Decimal("0.03"):
        return float(max(MIN_PRICE, _cents(_dec(donor_price) - _dec(discount))))
    if live_quote is not None and _dec(live_quote) > MIN_PRICE:
        return float(max(MIN_PRICE, _cents(_dec(live_quote) - _dec(quote_discount))))
    return float(MIN_PRICE)
