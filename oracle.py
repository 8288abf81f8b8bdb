"""
HolderRank Price Oracle
═══════════════════════════════════════════════════════════════════════════════
Reads the MUG/MU price from its on-chain oracle contract, once per run.

If the read fails the run continues with a fixed fallback price, so dynamic
thresholds degrade in accuracy instead of aborting the run.
"""

import logging
from decimal import Decimal
from typing import Protocol

from web3 import AsyncHTTPProvider, AsyncWeb3

logger = logging.getLogger(__name__)

DEFAULT_ORACLE_ADDRESS = "0x06bC5F1C59a971cDff30431B100ae69f416115a2"
FALLBACK_PRICE = 2.0
PRICE_DECIMALS = 18

ORACLE_ABI = [
    {
        "inputs": [],
        "name": "getMugMuPrice",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class PriceSource(Protocol):
    async def get_price(self) -> float: ...


class ContractPriceSource:
    """getMugMuPrice() read over JSON-RPC."""

    def __init__(
        self,
        rpc_url: str,
        address: str = DEFAULT_ORACLE_ADDRESS,
        decimals: int = PRICE_DECIMALS,
        w3: AsyncWeb3 | None = None,
    ):
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.address = address
        self.decimals = decimals

    async def get_price(self) -> float:
        contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.address), abi=ORACLE_ABI
        )
        raw = await contract.functions.getMugMuPrice().call()
        return float(Decimal(int(raw)).scaleb(-self.decimals))


class StaticPriceSource:
    """Fixed price from [oracle].price, used instead of reading the contract."""

    def __init__(self, price: float):
        self.price = price

    async def get_price(self) -> float:
        return self.price


class CachedPriceOracle:
    """Caches the first price read (or the fallback) for the rest of the run."""

    def __init__(self, source: PriceSource, fallback: float = FALLBACK_PRICE):
        self.source = source
        self.fallback = fallback
        self._price: float | None = None
        self.used_fallback = False

    @property
    def price(self) -> float | None:
        return self._price

    async def get_multiplier(self) -> float:
        if self._price is not None:
            return self._price

        try:
            price = float(await self.source.get_price())
            if not price > 0:
                raise ValueError(f"oracle returned non-positive price {price}")
            logger.info("Oracle price: %s", price)
        except Exception as e:
            logger.warning("Oracle read failed, using fallback price %s: %s", self.fallback, e)
            price = self.fallback
            self.used_fallback = True

        self._price = price
        return price
