import asyncio
import random
from dataclasses import dataclass
from typing import Optional

import httpx

# Errors that mean "try again next cycle" rather than "this input is bad".
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    asyncio.TimeoutError,
    OSError,
)
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential reconnect schedule shared by the long-lived listeners.

    ``delay_for(1)`` is the base delay; each further attempt multiplies it
    until ``max_delay`` caps it. Callers reset their attempt counter to zero
    after a successful connection.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        exponent = max(0, int(attempt) - 1)
        delay = min(self.base_delay * (self.multiplier**exponent), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + (rng or random).random())
            delay = min(delay, self.max_delay)
        return delay


def is_transient_error(error: BaseException) -> bool:
    """Check if an error is a network hiccup worth retrying later."""
    if isinstance(error, TRANSIENT_ERRORS):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


async def sleep_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """Sleep for ``delay`` seconds, waking early when ``stop_event`` is set.

    Returns True when the caller should stop.
    """
    if delay <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return stop_event.is_set()
