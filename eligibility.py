"""
HolderRank Badge Eligibility
═══════════════════════════════════════════════════════════════════════════════
Evaluates the basic / upgraded badge tiers against aggregated holdings.

A tier is met when EVERY token and NFT requirement in it is met. Dynamic
requirements divide their configured minimum by the asset's price multiplier.
When balances are summed across wallets every minimum is halved.

Overrides, applied in this order after evaluation:
1. exclude_basic_for_upgraded: upgraded holders are removed from basic
2. permanent accounts are added to both tiers
3. excluded accounts are removed from both tiers
"""

import logging
import math
from typing import Callable, Iterable

from models import (
    AggregatedHoldings,
    BadgeResult,
    EligibilityResult,
    Identity,
    NftRequirement,
    RequirementSet,
    TokenRequirement,
    normalize_handle,
)

logger = logging.getLogger(__name__)


def _unit_multiplier(symbol: str) -> float:
    return 1.0


def effective_minimum(
    min_balance: float,
    dynamic: bool = False,
    multiplier: float = 1.0,
    sum_across_wallets: bool = False,
) -> float:
    """Threshold a combined balance is compared against."""
    threshold = min_balance
    if dynamic:
        threshold = min_balance / multiplier if multiplier > 0 else math.inf
    if sum_across_wallets:
        threshold = threshold / 2
    return threshold


class EligibilityEngine:
    def __init__(
        self,
        basic: RequirementSet,
        upgraded: RequirementSet | None = None,
        sum_across_wallets: bool = False,
        multiplier: Callable[[str], float] | None = None,
        exclude_basic_for_upgraded: bool = False,
        permanent_accounts: Iterable[str] = (),
        excluded_accounts: Iterable[str] = (),
    ):
        self.basic = basic
        self.upgraded = upgraded
        self.sum_across_wallets = sum_across_wallets
        self.multiplier = multiplier or _unit_multiplier
        self.exclude_basic_for_upgraded = exclude_basic_for_upgraded
        self.permanent_accounts = [normalize_handle(h) for h in permanent_accounts]
        self.excluded_accounts = {normalize_handle(h) for h in excluded_accounts}

    # ═══════════════════════════════════════════════════════════════════════════
    # THRESHOLDS
    # ═══════════════════════════════════════════════════════════════════════════

    def token_minimum(self, token: TokenRequirement) -> float:
        return effective_minimum(
            token.min_balance,
            token.dynamic,
            self.multiplier(token.symbol),
            self.sum_across_wallets,
        )

    def nft_minimum(self, nft: NftRequirement) -> float:
        threshold = effective_minimum(
            nft.min_balance, nft.dynamic, self.multiplier(nft.name), False
        )
        if nft.dynamic and not math.isinf(threshold):
            threshold = math.ceil(threshold)
        if self.sum_across_wallets:
            threshold = threshold / 2
        return threshold

    def _tiers(self) -> list[RequirementSet]:
        return [self.basic] + ([self.upgraded] if self.upgraded else [])

    def listing_thresholds(
        self,
    ) -> tuple[dict[str, tuple[TokenRequirement, float]], dict[str, tuple[NftRequirement, float]]]:
        """Lowest effective minimum per asset across tiers, used to list holders."""
        tokens: dict[str, tuple[TokenRequirement, float]] = {}
        nfts: dict[str, tuple[NftRequirement, float]] = {}
        for tier in self._tiers():
            for token in tier.tokens:
                minimum = self.token_minimum(token)
                if token.address not in tokens or minimum < tokens[token.address][1]:
                    tokens[token.address] = (token, minimum)
            for nft in tier.nfts:
                minimum = self.nft_minimum(nft)
                if nft.address not in nfts or minimum < nfts[nft.address][1]:
                    nfts[nft.address] = (nft, minimum)
        return tokens, nfts

    # ═══════════════════════════════════════════════════════════════════════════
    # EVALUATION
    # ═══════════════════════════════════════════════════════════════════════════

    def meets(
        self, handle: str, holdings: AggregatedHoldings, requirements: RequirementSet, tier: str
    ) -> bool:
        """Every requirement of the tier holds."""
        # (name, held at all, amount, minimum); a missing asset fails even a zero minimum
        checks = [
            (
                token.symbol,
                token.address in holdings.tokens,
                holdings.token_balance(token.address),
                self.token_minimum(token),
            )
            for token in requirements.tokens
        ] + [
            (
                nft.name,
                nft.address in holdings.nfts,
                holdings.nft_count(nft.address),
                self.nft_minimum(nft),
            )
            for nft in requirements.nfts
        ]

        failed = [
            (name, amount, minimum)
            for name, held, amount, minimum in checks
            if not held or amount < minimum
        ]
        if failed:
            name, amount, minimum = failed[0]
            logger.debug(
                "%s does not meet %s requirement for %s: %s < %s",
                handle, tier, name, amount, minimum,
            )
            return False
        logger.debug("%s meets every %s requirement", handle, tier)
        return True

    def evaluate_identity(self, identity: Identity, holdings: AggregatedHoldings) -> EligibilityResult:
        basic = self.meets(identity.handle, holdings, self.basic, "basic")
        upgraded = bool(
            basic
            and self.upgraded is not None
            and self.meets(identity.handle, holdings, self.upgraded, "upgraded")
        )
        return EligibilityResult(identity.handle, basic, upgraded, tuple(identity.addresses))

    def evaluate(
        self,
        identities: Iterable[Identity],
        holdings_by_handle: dict[str, AggregatedHoldings],
    ) -> list[EligibilityResult]:
        permanent = set(self.permanent_accounts)
        results = []
        for identity in identities:
            if identity.handle in permanent:
                logger.debug("Skipping requirement check for permanent account %s", identity.handle)
                continue
            holdings = holdings_by_handle.get(identity.handle) or AggregatedHoldings()
            results.append(self.evaluate_identity(identity, holdings))
        return results

    def build_result(
        self,
        results: Iterable[EligibilityResult],
        identities: Iterable[Identity],
        timestamp: str,
        permanent_addresses: dict[str, str | None] | None = None,
    ) -> BadgeResult:
        """Apply the tier overrides and collect handles and addresses."""
        # dicts as insertion-ordered sets
        basic: dict[str, None] = {}
        upgraded: dict[str, None] = {}
        for result in results:
            if result.basic:
                basic[result.handle] = None
            if result.upgraded:
                upgraded[result.handle] = None

        if self.exclude_basic_for_upgraded:
            for handle in upgraded:
                if handle in basic:
                    del basic[handle]
                    logger.debug("Removed %s from basic list: holds upgraded badge", handle)

        for handle in self.permanent_accounts:
            basic[handle] = None
            upgraded[handle] = None

        for handle in self.excluded_accounts:
            if handle in basic:
                del basic[handle]
                logger.debug("Removed excluded account %s from basic list", handle)
            if handle in upgraded:
                del upgraded[handle]
                logger.debug("Removed excluded account %s from upgraded list", handle)

        identities = {identity.handle: identity for identity in identities}
        permanent_addresses = permanent_addresses or {}

        def _addresses(handles: dict[str, None]) -> list[str]:
            collected: dict[str, None] = {}
            for handle in handles:
                identity = identities.get(handle)
                if identity is not None and identity.addresses:
                    collected.update(dict.fromkeys(identity.addresses))
                elif permanent_addresses.get(handle):
                    collected[permanent_addresses[handle]] = None
            return list(collected)

        logger.info("Found %d eligible basic badge holders", len(basic))
        if self.upgraded is None:
            return BadgeResult(list(basic), _addresses(basic), timestamp)

        logger.info("Found %d eligible upgraded badge holders", len(upgraded))
        return BadgeResult(
            basic_handles=list(basic),
            basic_addresses=_addresses(basic),
            timestamp=timestamp,
            upgraded_handles=list(upgraded),
            upgraded_addresses=_addresses(upgraded),
        )
