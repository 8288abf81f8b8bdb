"""
HolderRank Pipeline
═══════════════════════════════════════════════════════════════════════════════
One run, end to end:

    list holders -> resolve identities -> (backfill balances) -> aggregate
    -> evaluate badges / score leaderboard -> write output

Output is written only after the whole run succeeded, and atomically, so a
failed run leaves the previously published files in place. Systemic lookup
failure surfaces as RetryFailure so the scheduler can retry sooner.
"""

import asyncio
import json
import logging
import math
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from batcher import RateLimitedBatcher, RetriesExhausted
from config import BadgeConfig, ConfigError, RunConfig, get_rpc_endpoint
from eligibility import EligibilityEngine, effective_minimum
from holdings import (
    HolderSource,
    HoldingsAggregator,
    HoldingsBook,
    SnapshotHolderSource,
    Web3BalanceSource,
    backfill_token_balances,
)
from identities import IdentityMap, IdentityResolver, ProfileLookup, load_static_mapping
from models import AggregatedHoldings, BadgeResult, Leaderboard, RequirementSet
from oracle import CachedPriceOracle, ContractPriceSource, PriceSource, StaticPriceSource
from scoring import ScoringEngine
from social import ArenaSocialClient
from strategies import Strategy, create_strategy, mu_multiplier

logger = logging.getLogger(__name__)


class RetryFailure(RuntimeError):
    """Lookups kept failing for the whole run; try again sooner."""


class RunInProgressError(RuntimeError):
    """A run was started while another one was still in flight."""


# ═══════════════════════════════════════════════════════════════════════════════
# RUN CONTEXT
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class RunContext:
    """Scheduler-owned state across runs."""

    in_flight: bool = False
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    retry_pending: bool = False
    runs: int = 0

    def start(self) -> None:
        if self.in_flight:
            raise RunInProgressError("A run is already in progress")
        self.in_flight = True
        self.runs += 1

    def succeeded(self) -> None:
        self.in_flight = False
        self.last_success = datetime.now(timezone.utc)
        self.last_error = None
        self.consecutive_failures = 0
        self.retry_pending = False

    def failed(self, error: BaseException) -> None:
        self.in_flight = False
        self.last_failure = datetime.now(timezone.utc)
        self.last_error = str(error)
        self.consecutive_failures += 1
        self.retry_pending = isinstance(error, RetryFailure)

    def next_delay(self, interval: float, retry_interval: float) -> float:
        """Seconds until the next run: short after a retry failure."""
        if self.retry_pending:
            return retry_interval
        return interval


@dataclass
class Collaborators:
    holder_source: HolderSource
    lookup: ProfileLookup
    batcher: RateLimitedBatcher
    price_source: PriceSource | None = None
    balance_source: Web3BalanceSource | None = None


def build_batcher(config: RunConfig) -> RateLimitedBatcher:
    settings = config.requests
    return RateLimitedBatcher(
        batch_size=settings.batch_size,
        batch_delay=settings.batch_delay_seconds,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
        fail_fast=settings.fail_fast,
    )


def build_collaborators(config: RunConfig, needs_oracle: bool) -> Collaborators:
    """Default collaborators for a config. Raises ConfigError before any I/O."""
    price_source = None
    if needs_oracle and config.oracle.price is not None:
        price_source = StaticPriceSource(config.oracle.price)
    elif needs_oracle:
        if not config.oracle.address:
            raise ConfigError("Dynamic minimums need an [oracle].address or [oracle].price")
        price_source = ContractPriceSource(
            get_rpc_endpoint(config.project.chain),
            address=config.oracle.address,
            decimals=config.oracle.decimals,
        )

    balance_source = None
    if config.requests.backfill_balances:
        balance_source = Web3BalanceSource(get_rpc_endpoint(config.project.chain))

    return Collaborators(
        holder_source=SnapshotHolderSource(config.project.raw_folder),
        lookup=ArenaSocialClient(),
        batcher=build_batcher(config),
        price_source=price_source,
        balance_source=balance_source,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# OUTPUT
# ═══════════════════════════════════════════════════════════════════════════════


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def write_json_atomic(path: str | Path, payload: dict) -> Path:
    """Write JSON next to its destination, then swap it in."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return path


# ═══════════════════════════════════════════════════════════════════════════════
# SHARED STAGES
# ═══════════════════════════════════════════════════════════════════════════════


def _load_mapping(config: RunConfig) -> dict[str, str]:
    if not config.project.wallet_mapping_file:
        return {}
    return load_static_mapping(config.project.wallet_mapping_file)


async def _price(collaborators: Collaborators, config: RunConfig) -> float:
    oracle = CachedPriceOracle(collaborators.price_source, fallback=config.oracle.fallback_price)
    return await oracle.get_multiplier()


async def _list_holders(
    source: HolderSource,
    book: HoldingsBook,
    token_thresholds: dict,
    nft_thresholds: dict,
) -> list[str]:
    """Fill the book and return qualifying addresses in discovery order."""
    qualifying: dict[str, None] = {}

    for token, minimum in token_thresholds.values():
        if math.isinf(minimum):
            logger.warning("Skipping %s: it can never meet its minimum", token.symbol)
            continue
        holders = await source.list_token_holders(token, minimum)
        book.add_token_holders(token, holders)
        qualifying.update(dict.fromkeys(h.address for h in holders))
        logger.info("Found %d %s holders with at least %s", len(holders), token.symbol, minimum)

    for nft, minimum in nft_thresholds.values():
        # Every holder is recorded; only those at the threshold qualify an address
        holders = await source.list_nft_holders(nft, 1)
        book.add_nft_holders(nft, holders)
        above = [h.address for h in holders if h.count >= minimum]
        qualifying.update(dict.fromkeys(above))
        logger.info(
            "Found %d %s holders, %d with at least %s", len(holders), nft.name, len(above), minimum
        )

    logger.info("Found %d qualifying addresses", len(qualifying))
    return list(qualifying)


async def _resolve_identities(
    mapping: dict[str, str],
    collaborators: Collaborators,
    qualifying: list[str],
    sum_across_wallets: bool,
) -> tuple[IdentityResolver, IdentityMap]:
    resolver = IdentityResolver(collaborators.lookup, collaborators.batcher, sum_across_wallets)
    identities = await resolver.resolve(mapping, qualifying)
    if resolver.all_lookups_failed:
        raise RetryFailure(
            f"All {resolver.lookups_attempted} social lookups failed after retries"
        )
    return resolver, identities


async def _aggregate(
    config: RunConfig,
    collaborators: Collaborators,
    book: HoldingsBook,
    identities: IdentityMap,
    requirements: Iterable[RequirementSet],
    sum_across_wallets: bool,
) -> dict[str, AggregatedHoldings]:
    if config.requests.backfill_balances:
        if collaborators.balance_source is None:
            logger.warning("Balance backfill enabled but no balance source configured")
        else:
            tokens = {t.address: t for tier in requirements for t in tier.tokens}
            await backfill_token_balances(
                book,
                sorted(identities.addresses()),
                tokens.values(),
                collaborators.balance_source,
                collaborators.batcher,
            )

    aggregator = HoldingsAggregator(sum_across_wallets)
    return {
        identity.handle: aggregator.aggregate(identity.addresses, book)
        for identity in identities
    }


def _publish(output_folder: Path, file_name: str, payload: dict) -> Path:
    path = write_json_atomic(output_folder / file_name, payload)
    logger.info("Saved %s", path)
    return path


# ═══════════════════════════════════════════════════════════════════════════════
# BADGES
# ═══════════════════════════════════════════════════════════════════════════════


def build_eligibility_engine(badges: BadgeConfig, price: float | None) -> EligibilityEngine:
    multiplier = None
    if price is not None:
        def multiplier(symbol: str) -> float:
            return mu_multiplier(symbol, price)

    return EligibilityEngine(
        basic=badges.basic,
        upgraded=badges.upgraded,
        sum_across_wallets=badges.sum_of_balances,
        multiplier=multiplier,
        exclude_basic_for_upgraded=badges.exclude_basic_for_upgraded,
        permanent_accounts=badges.permanent_accounts,
        excluded_accounts=badges.excluded_accounts,
    )


async def _badges(
    config: RunConfig, collaborators: Collaborators, write: bool
) -> BadgeResult:
    badges = config.badges
    mapping = _load_mapping(config)
    price = await _price(collaborators, config) if badges.needs_oracle else None
    engine = build_eligibility_engine(badges, price)

    book = HoldingsBook()
    token_thresholds, nft_thresholds = engine.listing_thresholds()
    qualifying = await _list_holders(
        collaborators.holder_source, book, token_thresholds, nft_thresholds
    )

    resolver, identities = await _resolve_identities(
        mapping, collaborators, qualifying, badges.sum_of_balances
    )
    holdings = await _aggregate(
        config, collaborators, book, identities,
        [badges.basic] + ([badges.upgraded] if badges.upgraded else []),
        badges.sum_of_balances,
    )

    results = engine.evaluate(identities, holdings)

    unknown_permanent = [
        handle
        for handle in badges.permanent_accounts
        if handle not in engine.excluded_accounts
        and not (identities.get(handle) and identities.get(handle).addresses)
    ]
    permanent_addresses = await resolver.lookup_addresses(unknown_permanent)

    result = engine.build_result(results, identities, utc_timestamp(), permanent_addresses)
    if write:
        _publish(config.project.output_folder, badges.output_file, result.to_dict())
    return result


# ═══════════════════════════════════════════════════════════════════════════════
# LEADERBOARD
# ═══════════════════════════════════════════════════════════════════════════════


def listing_thresholds_for(
    strategy: Strategy, requirements: RequirementSet, sum_across_wallets: bool
) -> tuple[dict, dict]:
    tokens = {
        token.address: (
            token,
            effective_minimum(strategy.token_minimum(token), sum_across_wallets=sum_across_wallets),
        )
        for token in requirements.tokens
    }
    nfts = {
        nft.address: (
            nft,
            effective_minimum(
                strategy.listing_minimum_nft(nft), sum_across_wallets=sum_across_wallets
            ),
        )
        for nft in requirements.nfts
    }
    return tokens, nfts


async def _leaderboard(
    config: RunConfig, collaborators: Collaborators, write: bool
) -> Leaderboard:
    settings = config.leaderboard
    mapping = _load_mapping(config)
    price = await _price(collaborators, config) if settings.needs_oracle else None
    strategy = create_strategy(settings.strategy, price, settings.base_units)
    logger.info("Using %s leaderboard strategy", strategy.name)

    book = HoldingsBook()
    token_thresholds, nft_thresholds = listing_thresholds_for(
        strategy, settings.requirements, settings.sum_of_balances
    )
    qualifying = await _list_holders(
        collaborators.holder_source, book, token_thresholds, nft_thresholds
    )

    _, identities = await _resolve_identities(
        mapping, collaborators, qualifying, settings.sum_of_balances
    )
    holdings = await _aggregate(
        config, collaborators, book, identities,
        [settings.requirements], settings.sum_of_balances,
    )

    engine = ScoringEngine(
        strategy,
        settings.requirements,
        max_entries=settings.max_entries,
        excluded_accounts=settings.excluded_accounts,
    )
    leaderboard = engine.build(identities, holdings, utc_timestamp())
    if write:
        _publish(config.project.output_folder, settings.output_file_name, leaderboard.to_dict())
    return leaderboard


# ═══════════════════════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════════════════


def _check_price_source(collaborators: Collaborators, needs_oracle: bool) -> None:
    if needs_oracle and collaborators.price_source is None:
        raise ConfigError("Dynamic minimums need a price source or an [oracle].address")


async def _run(stage, config, collaborators, context, write):
    context = context if context is not None else RunContext()
    context.start()
    try:
        result = await stage(config, collaborators, write)
    except RetriesExhausted as e:
        failure = RetryFailure(str(e))
        context.failed(failure)
        raise failure from e
    except BaseException as e:
        context.failed(e)
        raise
    context.succeeded()
    return result


async def run_badges(
    config: RunConfig,
    collaborators: Collaborators | None = None,
    context: RunContext | None = None,
    write: bool = True,
) -> BadgeResult:
    """Evaluate badge tiers and publish badges.json."""
    badges = config.require_badges()
    if collaborators is None:
        collaborators = build_collaborators(config, badges.needs_oracle)
    _check_price_source(collaborators, badges.needs_oracle)
    return await _run(_badges, config, collaborators, context, write)


async def run_leaderboard(
    config: RunConfig,
    collaborators: Collaborators | None = None,
    context: RunContext | None = None,
    write: bool = True,
) -> Leaderboard:
    """Score and rank identities and publish the leaderboard file."""
    settings = config.require_leaderboard()
    if collaborators is None:
        collaborators = build_collaborators(config, settings.needs_oracle)
    _check_price_source(collaborators, settings.needs_oracle)
    return await _run(_leaderboard, config, collaborators, context, write)


async def run_scheduled(
    run_once,
    context: RunContext,
    interval_seconds: float,
    retry_seconds: float,
    max_runs: int | None = None,
    sleep=asyncio.sleep,
) -> None:
    """Call run_once() forever (or max_runs times), pacing with the context."""
    while max_runs is None or context.runs < max_runs:
        try:
            await run_once()
            logger.info("Run %d succeeded", context.runs)
        except RetryFailure as e:
            logger.error("Run %d hit a retry failure: %s", context.runs, e)
        except (ConfigError, RunInProgressError):
            raise
        except Exception:
            logger.exception("Run %d failed", context.runs)

        if max_runs is not None and context.runs >= max_runs:
            break
        delay = context.next_delay(interval_seconds, retry_seconds)
        logger.info("Next run in %.0f seconds", delay)
        await sleep(delay)
