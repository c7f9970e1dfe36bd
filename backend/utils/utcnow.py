"""Naive-UTC time helpers.

``datetime.utcnow()`` and ``datetime.utcfromtimestamp()`` are deprecated
since Python 3.12. These wrappers produce the naive UTC datetimes stored in
the ledger, plus the epoch-second conversions the activity feeds speak.
"""

import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def epoch_seconds() -> int:
    """Current POSIX time in whole seconds, the unit of activity timestamps."""
    return int(time.time())
