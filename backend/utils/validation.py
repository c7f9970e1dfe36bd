import re
from typing import Optional


# Ethereum address regex
ETH_ADDRESS_REGEX = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_eth_address(address: str) -> str:
    """Validate Ethereum address format and return it lowercased."""
    if not address:
        raise ValueError("Address cannot be empty")

    address = address.strip()

    if not ETH_ADDRESS_REGEX.match(address):
        raise ValueError(f"Invalid Ethereum address format: {address}")

    return address.lower()


def normalize_eth_address(address: Optional[str]) -> Optional[str]:
    """Lowercased address, or None when the value is not a valid address."""
    try:
        return validate_eth_address(address or "")
    except ValueError:
        return None


def parse_price(value: object, default: Optional[float] = None) -> Optional[float]:
    """Coerce a numeric or numeric-string price, falling back to ``default``."""
    if value is None or isinstance(value, bool):
        return default
    try:
        price = float(value)
    except (TypeError, ValueError):
        return default
    if price != price:  # NaN
        return default
    return price


def is_tradable_price(price: Optional[float]) -> bool:
    """Binary-outcome prices live strictly inside (0, 1)."""
    return price is not None and 0.0 < price < 1.0
