"""
HolderRank Data Model
═══════════════════════════════════════════════════════════════════════════════
Plain records shared by every stage of a run: holdings fetched per address,
requirement sets from config, identities built by the resolver, and the
serializable payloads handed to renderers.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum


def normalize_address(address: str) -> str:
    """Lowercase and strip a wallet/contract address."""
    return (address or "").strip().lower()


def normalize_handle(handle: str) -> str:
    """Lowercase a social handle and drop a leading '@'."""
    return (handle or "").strip().lstrip("@").lower()


def format_units(raw_balance: int, decimals: int) -> float:
    """Convert an integer on-chain balance to a float using exact decimal math."""
    return float(Decimal(int(raw_balance)).scaleb(-int(decimals)))


class Provenance(str, Enum):
    """How an address was linked to an identity."""

    MAPPING = "mapping"
    RESOLVED = "resolved"
    DERIVED = "derived"


# ═══════════════════════════════════════════════════════════════════════════════
# HOLDINGS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TokenHolding:
    token_address: str
    symbol: str
    raw_balance: int | None
    decimals: int
    formatted_balance: float

    @classmethod
    def from_raw(
        cls, token_address: str, symbol: str, raw_balance: int, decimals: int
    ) -> "TokenHolding":
        return cls(
            token_address=normalize_address(token_address),
            symbol=symbol,
            raw_balance=int(raw_balance),
            decimals=int(decimals),
            formatted_balance=format_units(raw_balance, decimals),
        )


@dataclass(frozen=True)
class NftHolding:
    token_address: str
    name: str
    count: int


# ═══════════════════════════════════════════════════════════════════════════════
# REQUIREMENTS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TokenRequirement:
    address: str
    symbol: str
    min_balance: float = 0.0
    decimals: int = 18
    dynamic: bool = False
    weight: float = 0.0


@dataclass(frozen=True)
class NftRequirement:
    address: str
    name: str
    min_balance: float = 1.0
    dynamic: bool = False
    points_per_token: float = 0.0


@dataclass(frozen=True)
class RequirementSet:
    tokens: tuple[TokenRequirement, ...] = ()
    nfts: tuple[NftRequirement, ...] = ()

    def is_empty(self) -> bool:
        return not self.tokens and not self.nfts


# ═══════════════════════════════════════════════════════════════════════════════
# IDENTITIES
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class Identity:
    """A social handle and the wallet addresses linked to it, in link order."""

    handle: str
    addresses: dict[str, Provenance] = field(default_factory=dict)
    avatar_url: str | None = None

    @property
    def primary_address(self) -> str | None:
        return next(iter(self.addresses), None)

    def provenances(self) -> set[Provenance]:
        return set(self.addresses.values())


@dataclass
class AggregatedHoldings:
    """Combined holdings of one identity, keyed by lowercase asset address."""

    tokens: dict[str, TokenHolding] = field(default_factory=dict)
    nfts: dict[str, NftHolding] = field(default_factory=dict)

    def token_balance(self, asset_address: str) -> float:
        holding = self.tokens.get(normalize_address(asset_address))
        return holding.formatted_balance if holding else 0.0

    def nft_count(self, asset_address: str) -> int:
        holding = self.nfts.get(normalize_address(asset_address))
        return holding.count if holding else 0


@dataclass(frozen=True)
class EligibilityResult:
    handle: str
    basic: bool
    upgraded: bool
    addresses: tuple[str, ...] = ()


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT PAYLOADS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class LeaderboardEntry:
    rank: int
    handle: str
    total_points: float
    token_points: dict[str, float]
    nft_points: dict[str, float]
    primary_address: str | None
    profile_image_url: str | None = None


@dataclass
class Leaderboard:
    timestamp: str
    entries: list[LeaderboardEntry]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BadgeResult:
    basic_handles: list[str]
    basic_addresses: list[str]
    timestamp: str
    upgraded_handles: list[str] | None = None
    upgraded_addresses: list[str] | None = None

    def to_dict(self) -> dict:
        payload = {
            "basic_handles": self.basic_handles,
            "basic_addresses": self.basic_addresses,
            "timestamp": self.timestamp,
        }
        # Upgraded keys are omitted entirely when the project has no upgraded tier
        if self.upgraded_handles is not None:
            payload["upgraded_handles"] = self.upgraded_handles
            payload["upgraded_addresses"] = self.upgraded_addresses or []
        return payload
