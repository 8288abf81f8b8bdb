"""Shared fakes for the HolderRank test suite.

External collaborators (social API, holder indexer, price oracle) are replaced
with small in-memory fakes, and the batcher gets a sleep that records delays
instead of waiting.
"""

import pytest

from batcher import RateLimitedBatcher
from holdings import NftHolder, TokenHolder
from models import NftRequirement, TokenHolding, TokenRequirement, normalize_address
from social import HandleProfile, RateLimitedError, WalletProfile

MU = "0x00000000000000000000000000000000000000a1"
MUG = "0x00000000000000000000000000000000000000a2"
PUPS = "0x00000000000000000000000000000000000000b1"


class SleepRecorder:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


class FakeLookup:
    """address -> handle and handle -> address tables; listed keys always fail."""

    def __init__(self, handles=None, wallets=None, failing=()):
        self.handles = handles or {}
        self.wallets = wallets or {}
        self.failing = set(failing)
        self.address_calls: list[str] = []
        self.handle_calls: list[str] = []

    async def resolve_handle_for_address(self, address):
        self.address_calls.append(address)
        if address in self.failing:
            raise RateLimitedError(f"rate limited for {address}")
        entry = self.handles.get(address)
        if entry is None:
            return None
        handle, avatar = entry if isinstance(entry, tuple) else (entry, None)
        return HandleProfile(handle, avatar)

    async def resolve_address_for_handle(self, handle):
        self.handle_calls.append(handle)
        if handle in self.failing:
            raise RateLimitedError(f"rate limited for {handle}")
        entry = self.wallets.get(handle)
        if entry is None:
            return None
        address, avatar = entry if isinstance(entry, tuple) else (entry, None)
        return WalletProfile(address, avatar)


class FakeHolderSource:
    """asset -> {address: raw balance or NFT count}."""

    def __init__(self, tokens=None, nfts=None):
        self.tokens = tokens or {}
        self.nfts = nfts or {}
        self.token_calls: list[tuple[str, float]] = []
        self.nft_calls: list[tuple[str, float]] = []

    async def list_token_holders(self, token, min_balance):
        self.token_calls.append((token.address, min_balance))
        holders = []
        for address, raw in self.tokens.get(token.address, {}).items():
            formatted = raw / 10**token.decimals
            if formatted >= min_balance:
                holders.append(TokenHolder(address, raw, formatted))
        return holders

    async def list_nft_holders(self, nft, min_count):
        self.nft_calls.append((nft.address, min_count))
        return [
            NftHolder(address, count)
            for address, count in self.nfts.get(nft.address, {}).items()
            if count >= min_count
        ]


class FakePriceSource:
    def __init__(self, price=None, error=None):
        self.price = price
        self.error = error
        self.calls = 0

    async def get_price(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price


def units(amount, decimals=18) -> int:
    return int(amount) * 10**decimals


def holding(asset, symbol, amount, decimals=18) -> TokenHolding:
    return TokenHolding.from_raw(asset, symbol, units(amount, decimals), decimals)


def mu_requirement(min_balance=100, dynamic=False, weight=0.0) -> TokenRequirement:
    return TokenRequirement(
        address=MU, symbol="MU", min_balance=min_balance, dynamic=dynamic, weight=weight
    )


def pups_requirement(min_balance=1, points_per_token=0.0) -> NftRequirement:
    return NftRequirement(
        address=PUPS, name="Mu Pups", min_balance=min_balance, points_per_token=points_per_token
    )


def addr(n: int) -> str:
    return normalize_address(f"0x{n:040x}")


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def batcher(sleep):
    return RateLimitedBatcher(
        batch_size=2,
        batch_delay=0.5,
        max_retries=3,
        retry_base_delay=0.5,
        retry_max_delay=8.0,
        sleep=sleep,
    )
