"""
HolderRank Leaderboard Strategies
═══════════════════════════════════════════════════════════════════════════════
Point and eligibility rules for each leaderboard flavour.

    standard  points = balance * weight (tokens), count * points_per_token (NFTs)
              eligible when any configured asset meets its min_balance
    mu        points = 2 * balance * multiplier(symbol), where the multiplier is
              derived from the MUG/MU oracle price; thresholds are dynamic:
              base_units / multiplier (rounded up for NFTs)

Strategies are selected by name from STRATEGIES.
"""

import logging
import math
from typing import Protocol

from models import AggregatedHoldings, NftRequirement, RequirementSet, TokenRequirement

logger = logging.getLogger(__name__)

DEFAULT_BASE_UNITS = 100.0


def mu_multiplier(symbol: str, price: float) -> float:
    """Value of one unit of a MU-family asset, in MU."""
    symbol = (symbol or "").strip().lower()
    if symbol == "mu":
        return 1.0
    if symbol == "mug":
        return price
    if symbol == "muo":
        return 1.1 * price
    if symbol == "muv":
        return 10 * 1.1 * price
    if symbol == "mu pups":
        return 10 * price
    return 0.0


def has_mu_multiplier(symbol: str) -> bool:
    """Whether the symbol is priced by the MU table at all."""
    return mu_multiplier(symbol, 1.0) > 0


def dynamic_threshold(base_units: float, multiplier: float) -> float:
    """base_units / multiplier; assets with no multiplier can never qualify."""
    if not multiplier > 0:
        return math.inf
    return base_units / multiplier


class PointsBreakdown:
    def __init__(self):
        self.token_points: dict[str, float] = {}
        self.nft_points: dict[str, float] = {}

    @property
    def total(self) -> float:
        return sum(self.token_points.values()) + sum(self.nft_points.values())


class Strategy(Protocol):
    name: str
    needs_oracle: bool
    output_file_name: str

    def multiplier(self, symbol: str) -> float: ...

    def token_minimum(self, token: TokenRequirement) -> float: ...

    def nft_minimum(self, nft: NftRequirement) -> float: ...

    def listing_minimum_nft(self, nft: NftRequirement) -> float: ...

    def calculate_points(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> PointsBreakdown: ...

    def check_eligibility(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> bool: ...


def meets_any_minimum(
    strategy: Strategy, holdings: AggregatedHoldings, requirements: RequirementSet
) -> bool:
    """True when any held asset reaches the strategy's minimum for it."""
    for token in requirements.tokens:
        holding = holdings.tokens.get(token.address)
        if holding is not None and holding.formatted_balance >= strategy.token_minimum(token):
            return True
    for nft in requirements.nfts:
        holding = holdings.nfts.get(nft.address)
        if holding is not None and holding.count >= strategy.nft_minimum(nft):
            return True
    return False


# ═══════════════════════════════════════════════════════════════════════════════
# STANDARD
# ═══════════════════════════════════════════════════════════════════════════════


class StandardStrategy:
    name = "standard"
    needs_oracle = False
    output_file_name = "standard_leaderboard.json"

    def __init__(self, price: float | None = None, base_units: float = DEFAULT_BASE_UNITS):
        self.price = price
        self.base_units = base_units

    def multiplier(self, symbol: str) -> float:
        return 1.0

    def token_minimum(self, token: TokenRequirement) -> float:
        return token.min_balance

    def nft_minimum(self, nft: NftRequirement) -> float:
        return nft.min_balance

    def listing_minimum_nft(self, nft: NftRequirement) -> float:
        return nft.min_balance

    def calculate_points(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> PointsBreakdown:
        points = PointsBreakdown()
        for token in requirements.tokens:
            holding = holdings.tokens.get(token.address)
            if holding is not None:
                points.token_points[token.symbol] = holding.formatted_balance * token.weight
        for nft in requirements.nfts:
            holding = holdings.nfts.get(nft.address)
            if holding is not None:
                points.nft_points[nft.name] = holding.count * nft.points_per_token
        return points

    def check_eligibility(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> bool:
        return meets_any_minimum(self, holdings, requirements)


# ═══════════════════════════════════════════════════════════════════════════════
# MU
# ═══════════════════════════════════════════════════════════════════════════════


class MuStrategy:
    name = "mu"
    needs_oracle = True
    output_file_name = "mu_leaderboard.json"

    def __init__(self, price: float, base_units: float = DEFAULT_BASE_UNITS):
        self.price = price
        self.base_units = base_units

    def multiplier(self, symbol: str) -> float:
        return mu_multiplier(symbol, self.price)

    def token_minimum(self, token: TokenRequirement) -> float:
        return dynamic_threshold(self.base_units, self.multiplier(token.symbol))

    def nft_minimum(self, nft: NftRequirement) -> float:
        threshold = dynamic_threshold(self.base_units, self.multiplier(nft.name))
        return threshold if math.isinf(threshold) else math.ceil(threshold)

    def listing_minimum_nft(self, nft: NftRequirement) -> float:
        # A single pup is enough to be listed; eligibility still applies nft_minimum
        if nft.name.strip().lower() == "mu pups":
            return 1
        return self.nft_minimum(nft)

    def calculate_points(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> PointsBreakdown:
        points = PointsBreakdown()
        for token in requirements.tokens:
            holding = holdings.tokens.get(token.address)
            if holding is not None:
                points.token_points[token.symbol] = (
                    2 * holding.formatted_balance * self.multiplier(token.symbol)
                )
                logger.debug(
                    "Token points for %s at balance %s: %s",
                    token.symbol, holding.formatted_balance, points.token_points[token.symbol],
                )
        for nft in requirements.nfts:
            holding = holdings.nfts.get(nft.address)
            if holding is not None:
                points.nft_points[nft.name] = 2 * holding.count * self.multiplier(nft.name)
                logger.debug(
                    "NFT points for %s at count %s: %s",
                    nft.name, holding.count, points.nft_points[nft.name],
                )
        return points

    def check_eligibility(
        self, holdings: AggregatedHoldings, requirements: RequirementSet
    ) -> bool:
        return meets_any_minimum(self, holdings, requirements)


STRATEGIES = {
    StandardStrategy.name: StandardStrategy,
    MuStrategy.name: MuStrategy,
}


def create_strategy(
    name: str, price: float | None = None, base_units: float = DEFAULT_BASE_UNITS
) -> Strategy:
    """Instantiate a strategy by name. The mu strategy needs the oracle price."""
    key = (name or "").strip().lower()
    if key not in STRATEGIES:
        raise ValueError(f"Unknown leaderboard strategy: {name!r}")
    strategy_cls = STRATEGIES[key]
    if strategy_cls.needs_oracle and price is None:
        raise ValueError(f"Strategy {key!r} needs an oracle price")
    return strategy_cls(price, base_units)
