"""
Wallet classification for incoming activity.

Every observed wallet is either one of our agents' own wallets (SELF), a
donor whose trades are copied into one or more agents (DONOR), or noise.
The classifier holds one immutable roster snapshot; ``reload`` builds a new
snapshot and swaps the reference in a single assignment, so readers never
see a half-updated mapping.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from config import DonorEntry
from models.trade import WalletRole
from utils.logger import get_logger
from utils.validation import normalize_eth_address

logger = get_logger("wallet_classifier")


@dataclass(frozen=True)
class WalletRoster:
    donor_wallets: frozenset = frozenset()
    donor_to_agents: Mapping[str, tuple] = field(default_factory=lambda: MappingProxyType({}))
    proxy_wallets: tuple = ()
    onchain_wallets: tuple = ()
    self_wallet_to_agent: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def self_wallets(self) -> tuple:
        return tuple(self.self_wallet_to_agent.keys())


def build_self_wallet_map(agent_wallets: Mapping[str, str]) -> dict[str, str]:
    """Map each valid agent wallet to its agent; invalid entries are dropped."""
    result: dict[str, str] = {}
    for agent_id, wallet in agent_wallets.items():
        normalized = normalize_eth_address(wallet)
        if normalized and agent_id:
            result[normalized] = agent_id
    return result


def build_roster(
    donors: Iterable[DonorEntry], self_wallet_to_agent: Mapping[str, str]
) -> WalletRoster:
    donor_to_agents: dict[str, list[str]] = {}
    proxy_wallets: list[str] = []
    onchain_wallets: list[str] = []

    for entry in donors:
        if not entry.agent_id:
            continue
        for raw, bucket in (
            (entry.proxy_wallet, proxy_wallets),
            (entry.onchain_wallet, onchain_wallets),
        ):
            wallet = normalize_eth_address(raw)
            if wallet is None:
                continue
            agents = donor_to_agents.setdefault(wallet, [])
            if entry.agent_id not in agents:
                agents.append(entry.agent_id)
            if wallet not in bucket:
                bucket.append(wallet)

    return WalletRoster(
        donor_wallets=frozenset(donor_to_agents),
        donor_to_agents=MappingProxyType({w: tuple(a) for w, a in donor_to_agents.items()}),
        proxy_wallets=tuple(proxy_wallets),
        onchain_wallets=tuple(onchain_wallets),
        self_wallet_to_agent=MappingProxyType(dict(self_wallet_to_agent)),
    )


class WalletClassifier:
    """Routes wallets to the agents that should mirror them."""

    def __init__(
        self,
        donors: Iterable[DonorEntry] = (),
        agent_wallets: Optional[Mapping[str, str]] = None,
    ):
        self._self_wallets = build_self_wallet_map(agent_wallets or {})
        self._roster = build_roster(donors, self._self_wallets)

    @property
    def roster(self) -> WalletRoster:
        return self._roster

    def reload(self, donors: Iterable[DonorEntry]) -> WalletRoster:
        """Replace the donor mapping; the self-wallet map is static."""
        roster = build_roster(donors, self._self_wallets)
        self._roster = roster
        logger.info(
            "Wallet roster reloaded",
            donor_wallets=len(roster.donor_wallets),
            agents=len({a for agents in roster.donor_to_agents.values() for a in agents}),
            self_wallets=len(roster.self_wallet_to_agent),
        )
        return roster

    def classify(self, wallet: Optional[str]) -> Optional[WalletRole]:
        key = (wallet or "").lower()
        roster = self._roster
        if key in roster.self_wallet_to_agent:
            return WalletRole.SELF
        if key in roster.donor_wallets:
            return WalletRole.DONOR
        return None

    def agents_for_donor(self, wallet: Optional[str]) -> tuple:
        return self._roster.donor_to_agents.get((wallet or "").lower(), ())

    def agent_for_self(self, wallet: Optional[str]) -> Optional[str]:
        return self._roster.self_wallet_to_agent.get((wallet or "").lower())

    def watched_wallets(self) -> set[str]:
        """Every wallet whose activity is relevant to the engine."""
        roster = self._roster
        return set(roster.donor_wallets) | set(roster.self_wallet_to_agent)
