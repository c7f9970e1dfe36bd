from .logger import setup_logging, get_logger
from .retry import RetryPolicy, is_transient_error, sleep_or_stop
from .validation import validate_eth_address, normalize_eth_address, parse_price, is_tradable_price

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",

    # Retry
    "RetryPolicy",
    "is_transient_error",
    "sleep_or_stop",

    # Validation
    "validate_eth_address",
    "normalize_eth_address",
    "parse_price",
    "is_tradable_price",
]
