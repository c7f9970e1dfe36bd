"""Shared fixtures for copy engine tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest

from config import DonorEntry

DONOR_PROXY = "0x1111111111111111111111111111111111111111"
DONOR_ONCHAIN = "0x2222222222222222222222222222222222222222"
SELF_WALLET = "0x3333333333333333333333333333333333333333"
CONDITION_ID = "0xcond0000000000000000000000000000000000000000000000000000000000a1"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def donors():
    return [
        DonorEntry(agent_id="agent-a", proxy_wallet=DONOR_PROXY, onchain_wallet=DONOR_ONCHAIN),
        DonorEntry(agent_id="agent-b", proxy_wallet=DONOR_PROXY),
    ]


@pytest.fixture
def agent_wallets():
    return {"agent-a": SELF_WALLET}


@pytest.fixture
def make_activity():
    """Factory for data-api ``/activity`` records."""

    def _make(**overrides):
        record = {
            "proxyWallet": DONOR_PROXY,
            "timestamp": 1_760_000_000,
            "conditionId": CONDITION_ID,
            "type": "TRADE",
            "size": 10,
            "usdcSize": 5.5,
            "transactionHash": "0xtx01",
            "price": 0.55,
            "asset": "71321045679252212594626385532706912750332728571942532289631379312455583992563",
            "side": "BUY",
            "outcomeIndex": 0,
            "title": "Bitcoin Up or Down - October 9, 3:15PM-3:30PM ET",
            "slug": "btc-updown-15m-1760037300",
            "eventSlug": "btc-updown-15m-1760037300",
            "icon": "https://polymarket-upload.s3.us-east-2.amazonaws.com/BTC+fullsize.png",
            "outcome": "Up",
        }
        record.update(overrides)
        return record

    return _make
