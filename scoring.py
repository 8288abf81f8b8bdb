"""
HolderRank Scoring
═══════════════════════════════════════════════════════════════════════════════
Turns aggregated identity holdings into a ranked leaderboard.

Identities that fail the strategy's eligibility check or sit on the exclusion
list are dropped. The rest are sorted by total points, descending, with a
stable sort so equal scores keep their input order, then ranked from 1.
"""

import logging
from typing import Iterable

from models import (
    AggregatedHoldings,
    Identity,
    Leaderboard,
    LeaderboardEntry,
    RequirementSet,
    normalize_handle,
)
from strategies import Strategy

logger = logging.getLogger(__name__)


class ScoringEngine:
    def __init__(
        self,
        strategy: Strategy,
        requirements: RequirementSet,
        max_entries: int = 0,
        excluded_accounts: Iterable[str] = (),
    ):
        self.strategy = strategy
        self.requirements = requirements
        self.max_entries = max_entries
        self.excluded_accounts = {normalize_handle(h) for h in excluded_accounts}

    def score_identity(
        self, identity: Identity, holdings: AggregatedHoldings
    ) -> LeaderboardEntry | None:
        """Unranked entry for an eligible identity, else None."""
        if not self.strategy.check_eligibility(holdings, self.requirements):
            logger.debug("%s is not eligible for the leaderboard", identity.handle)
            return None

        points = self.strategy.calculate_points(holdings, self.requirements)
        logger.debug("%s scores %s points", identity.handle, points.total)
        return LeaderboardEntry(
            rank=0,
            handle=identity.handle,
            total_points=points.total,
            token_points=points.token_points,
            nft_points=points.nft_points,
            primary_address=identity.primary_address,
            profile_image_url=identity.avatar_url,
        )

    def rank(self, entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
        kept = []
        for entry in entries:
            if entry.handle in self.excluded_accounts:
                logger.debug("Dropping excluded account %s", entry.handle)
                continue
            kept.append(entry)

        # sorted() is stable
        ranked = sorted(kept, key=lambda e: e.total_points, reverse=True)
        if self.max_entries:
            ranked = ranked[: self.max_entries]
        for index, entry in enumerate(ranked):
            entry.rank = index + 1
        return ranked

    def build(
        self,
        identities: Iterable[Identity],
        holdings_by_handle: dict[str, AggregatedHoldings],
        timestamp: str,
    ) -> Leaderboard:
        entries = []
        for identity in identities:
            if not identity.addresses:
                continue
            holdings = holdings_by_handle.get(identity.handle) or AggregatedHoldings()
            entry = self.score_identity(identity, holdings)
            if entry is not None:
                entries.append(entry)

        ranked = self.rank(entries)
        logger.info(
            "Ranked %d of %d eligible identities", len(ranked), len(entries)
        )
        return Leaderboard(timestamp=timestamp, entries=ranked)
