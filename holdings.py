"""
HolderRank Holdings
═══════════════════════════════════════════════════════════════════════════════
Per-address holdings for one run, and their aggregation into per-identity
holdings.

Holder lists come from a HolderSource. The bundled SnapshotHolderSource reads
indexer exports from the raw folder:

    raw/token_holders_<token_address>.csv   address,raw_balance[,formatted_balance]
    raw/nft_holders_<nft_address>.csv       address,count

Aggregation policy:
    sum mode  the identity balance is the sum over its wallets (exact integer
              sum of raw balances when every wallet reports one)
    max mode  the identity balance is the largest single-wallet balance

Assets whose combined balance is zero are left out of the result.
"""

import csv
import logging
import math
from decimal import Decimal
from pathlib import Path
from typing import Iterable, NamedTuple, Protocol

from web3 import AsyncHTTPProvider, AsyncWeb3

from batcher import RateLimitedBatcher
from models import (
    AggregatedHoldings,
    NftHolding,
    NftRequirement,
    TokenHolding,
    TokenRequirement,
    format_units,
    normalize_address,
)

logger = logging.getLogger(__name__)

# ERC-20 ABI (minimal for balanceOf)
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class TokenHolder(NamedTuple):
    address: str
    raw_balance: int | None
    formatted_balance: float


class NftHolder(NamedTuple):
    address: str
    count: int


class HolderSource(Protocol):
    async def list_token_holders(
        self, token: TokenRequirement, min_balance: float
    ) -> list[TokenHolder]: ...

    async def list_nft_holders(self, nft: NftRequirement, min_count: float) -> list[NftHolder]: ...


# ═══════════════════════════════════════════════════════════════════════════════
# HOLDER SOURCES
# ═══════════════════════════════════════════════════════════════════════════════


def _parse_int(value) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_float(value) -> float | None:
    try:
        parsed = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if math.isfinite(parsed) else None


class SnapshotHolderSource:
    """Reads holder lists exported by an indexer into the raw folder."""

    def __init__(self, raw_folder: str | Path = "raw"):
        self.raw_folder = Path(raw_folder)

    def token_file(self, token_address: str) -> Path:
        return self.raw_folder / f"token_holders_{normalize_address(token_address)}.csv"

    def nft_file(self, nft_address: str) -> Path:
        return self.raw_folder / f"nft_holders_{normalize_address(nft_address)}.csv"

    async def list_token_holders(
        self, token: TokenRequirement, min_balance: float
    ) -> list[TokenHolder]:
        path = self.token_file(token.address)
        if not path.exists():
            logger.warning("No holder snapshot for %s: %s", token.symbol, path)
            return []

        holders = []
        with open(path, "r", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for row in reader:
                address = normalize_address(row.get("address", ""))
                if not address:
                    continue
                raw = _parse_int(row.get("raw_balance"))
                formatted = (
                    format_units(raw, token.decimals)
                    if raw is not None
                    else _parse_float(row.get("formatted_balance"))
                )
                if formatted is None or formatted < min_balance:
                    continue
                holders.append(TokenHolder(address, raw, formatted))
        return holders

    async def list_nft_holders(self, nft: NftRequirement, min_count: float) -> list[NftHolder]:
        path = self.nft_file(nft.address)
        if not path.exists():
            logger.warning("No holder snapshot for %s: %s", nft.name, path)
            return []

        holders = []
        with open(path, "r", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for row in reader:
                address = normalize_address(row.get("address", ""))
                count = _parse_int(row.get("count"))
                if address and count and count >= min_count:
                    holders.append(NftHolder(address, count))
        return holders


class Web3BalanceSource:
    """Reads ERC-20 balances straight from the chain."""

    def __init__(self, rpc_url: str, w3: AsyncWeb3 | None = None):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))

    async def balance_of(self, token: TokenRequirement, address: str) -> TokenHolding:
        contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token.address), abi=ERC20_ABI
        )
        raw = await contract.functions.balanceOf(
            AsyncWeb3.to_checksum_address(address)
        ).call()
        return TokenHolding.from_raw(token.address, token.symbol, raw, token.decimals)


# ═══════════════════════════════════════════════════════════════════════════════
# PER-ADDRESS BOOK
# ═══════════════════════════════════════════════════════════════════════════════


class HoldingsBook:
    """address -> asset -> holding for every wallet seen in a run."""

    def __init__(self):
        self.tokens: dict[str, dict[str, TokenHolding]] = {}
        self.nfts: dict[str, dict[str, NftHolding]] = {}

    def add_token(self, address: str, holding: TokenHolding) -> None:
        self.tokens.setdefault(normalize_address(address), {})[holding.token_address] = holding

    def add_nft(self, address: str, holding: NftHolding) -> None:
        self.nfts.setdefault(normalize_address(address), {})[holding.token_address] = holding

    def token_holdings(self, address: str) -> dict[str, TokenHolding]:
        return self.tokens.get(normalize_address(address), {})

    def nft_holdings(self, address: str) -> dict[str, NftHolding]:
        return self.nfts.get(normalize_address(address), {})

    def has_token(self, address: str, token_address: str) -> bool:
        return normalize_address(token_address) in self.token_holdings(address)

    def add_token_holders(self, token: TokenRequirement, holders: Iterable[TokenHolder]) -> int:
        count = 0
        for holder in holders:
            self.add_token(
                holder.address,
                TokenHolding(
                    token_address=normalize_address(token.address),
                    symbol=token.symbol,
                    raw_balance=holder.raw_balance,
                    decimals=token.decimals,
                    formatted_balance=holder.formatted_balance,
                ),
            )
            count += 1
        return count

    def add_nft_holders(self, nft: NftRequirement, holders: Iterable[NftHolder]) -> int:
        count = 0
        for holder in holders:
            self.add_nft(
                holder.address,
                NftHolding(normalize_address(nft.address), nft.name, int(holder.count)),
            )
            count += 1
        return count


async def backfill_token_balances(
    book: HoldingsBook,
    addresses: Iterable[str],
    tokens: Iterable[TokenRequirement],
    source: Web3BalanceSource,
    batcher: RateLimitedBatcher,
) -> int:
    """Read on-chain balances for (address, token) pairs missing from the book."""
    tokens = list(tokens)
    pairs = [
        (address, token)
        for address in addresses
        for token in tokens
        if not book.has_token(address, token.address)
    ]
    if not pairs:
        return 0
    logger.info("Backfilling %d missing token balances on-chain...", len(pairs))

    async def _fetch(pair):
        address, token = pair
        return await source.balance_of(token, address)

    report = await batcher.run(pairs, _fetch, label="balance")
    filled = 0
    for (address, _), holding in zip(pairs, report.results):
        if holding is not None and holding.formatted_balance > 0:
            book.add_token(address, holding)
            filled += 1
    logger.info("Backfilled %d non-zero balances", filled)
    return filled


# ═══════════════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════════════


def _usable_balance(value: float) -> bool:
    return value is not None and math.isfinite(value) and value > 0


class HoldingsAggregator:
    """Merges wallet holdings into identity holdings under one policy."""

    def __init__(self, sum_across_wallets: bool):
        self.sum_across_wallets = sum_across_wallets

    def _combine_tokens(self, holdings: list[TokenHolding]) -> TokenHolding | None:
        holdings = [h for h in holdings if _usable_balance(h.formatted_balance)]
        if not holdings:
            return None

        if not self.sum_across_wallets:
            best = holdings[0]
            for holding in holdings[1:]:
                if holding.formatted_balance > best.formatted_balance:
                    best = holding
            return best

        first = holdings[0]
        if all(h.raw_balance is not None for h in holdings):
            raw_total = sum(h.raw_balance for h in holdings)
            formatted = format_units(raw_total, first.decimals)
        else:
            raw_total = None
            formatted = float(sum(Decimal(repr(h.formatted_balance)) for h in holdings))
        return TokenHolding(
            token_address=first.token_address,
            symbol=first.symbol,
            raw_balance=raw_total,
            decimals=first.decimals,
            formatted_balance=formatted,
        )

    def _combine_nfts(self, holdings: list[NftHolding]) -> NftHolding | None:
        holdings = [h for h in holdings if h.count > 0]
        if not holdings:
            return None
        first = holdings[0]
        if self.sum_across_wallets:
            return NftHolding(first.token_address, first.name, sum(h.count for h in holdings))
        return max(holdings, key=lambda h: h.count)

    def combine(self, parts: Iterable[AggregatedHoldings]) -> AggregatedHoldings:
        """Merge already-aggregated holdings (e.g. per wallet) into one."""
        token_groups: dict[str, list[TokenHolding]] = {}
        nft_groups: dict[str, list[NftHolding]] = {}
        for part in parts:
            for asset, holding in part.tokens.items():
                token_groups.setdefault(asset, []).append(holding)
            for asset, holding in part.nfts.items():
                nft_groups.setdefault(asset, []).append(holding)

        combined = AggregatedHoldings()
        for asset, group in token_groups.items():
            holding = self._combine_tokens(group)
            if holding is not None:
                combined.tokens[asset] = holding
        for asset, group in nft_groups.items():
            holding = self._combine_nfts(group)
            if holding is not None:
                combined.nfts[asset] = holding
        return combined

    def aggregate(self, addresses: Iterable[str], book: HoldingsBook) -> AggregatedHoldings:
        """Combine the book's holdings for every address of one identity."""
        parts = [
            AggregatedHoldings(
                tokens=dict(book.token_holdings(address)),
                nfts=dict(book.nft_holdings(address)),
            )
            for address in addresses
        ]
        return self.combine(parts)
