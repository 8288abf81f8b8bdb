"""
HolderRank Identity Resolver
═══════════════════════════════════════════════════════════════════════════════
Links wallet addresses to social handles.

Sources, in priority order:
1. Static mapping file (address -> handle), provenance "mapping"
2. Social lookup of the address, provenance "resolved"
3. Social lookup of a mapped handle's own wallet, provenance "derived"
   (only when balances are summed across wallets)

An address belongs to at most one identity. The first link wins, and the
mapping is always applied first, so a mapping entry is never overridden.
"""

import csv
import json
import logging
from pathlib import Path
from typing import Iterable, Iterator, Protocol

from batcher import RateLimitedBatcher
from models import Identity, Provenance, normalize_address, normalize_handle
from social import HandleProfile, WalletProfile

logger = logging.getLogger(__name__)


class ProfileLookup(Protocol):
    async def resolve_handle_for_address(self, address: str) -> HandleProfile | None: ...

    async def resolve_address_for_handle(self, handle: str) -> WalletProfile | None: ...


def load_static_mapping(path: str | Path) -> dict[str, str]:
    """Load an address -> handle mapping from a JSON object or a CSV file.

    CSV files need 'address' and 'handle' columns. Addresses and handles are
    lowercased. A missing file yields an empty mapping; a malformed one raises.
    """
    path = Path(path)
    if not path.exists():
        logger.warning("Wallet mapping file not found: %s", path)
        return {}

    mapping = {}
    if path.suffix.lower() == ".csv":
        with open(path, "r", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            for row in reader:
                address = normalize_address(row.get("address", ""))
                handle = normalize_handle(row.get("handle", ""))
                if address and handle and address not in mapping:
                    mapping[address] = handle
    else:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Wallet mapping {path} must be a JSON object")
        for address, handle in data.items():
            if not isinstance(handle, str):
                logger.warning("Skipping wallet %s: handle %r is not a string", address, handle)
                continue
            address = normalize_address(address)
            handle = normalize_handle(handle)
            if address and handle:
                mapping[address] = handle

    logger.info("Loaded %d wallet-to-handle mappings from %s", len(mapping), path)
    return mapping


class IdentityMap:
    """handle -> Identity accumulator with an address -> handle ownership index."""

    def __init__(self):
        self._identities: dict[str, Identity] = {}
        self._owners: dict[str, str] = {}
        self.dropped: list[str] = []

    def __iter__(self) -> Iterator[Identity]:
        return iter(self._identities.values())

    def __len__(self) -> int:
        return len(self._identities)

    def __contains__(self, handle: str) -> bool:
        return normalize_handle(handle) in self._identities

    def get(self, handle: str) -> Identity | None:
        return self._identities.get(normalize_handle(handle))

    def get_or_create(self, handle: str) -> Identity:
        handle = normalize_handle(handle)
        identity = self._identities.get(handle)
        if identity is None:
            identity = Identity(handle=handle)
            self._identities[handle] = identity
        return identity

    def owner_of(self, address: str) -> str | None:
        return self._owners.get(normalize_address(address))

    def addresses(self) -> set[str]:
        return set(self._owners)

    def link(
        self,
        address: str,
        handle: str,
        provenance: Provenance,
        avatar_url: str | None = None,
    ) -> bool:
        """Attach an address to a handle. Returns False if it was already owned."""
        address = normalize_address(address)
        handle = normalize_handle(handle)
        if not address or not handle:
            return False

        owner = self._owners.get(address)
        if owner is not None:
            if owner == handle:
                logger.debug("Address %s already linked to %s", address, handle)
            else:
                logger.warning(
                    "Address %s is linked to %s (%s); ignoring %s link to %s",
                    address, owner,
                    self._identities[owner].addresses[address].value,
                    provenance.value, handle,
                )
            return False

        identity = self.get_or_create(handle)
        identity.addresses[address] = provenance
        if avatar_url and not identity.avatar_url:
            identity.avatar_url = avatar_url
        self._owners[address] = handle
        return True


class IdentityResolver:
    """Builds the IdentityMap for one run."""

    def __init__(
        self,
        lookup: ProfileLookup,
        batcher: RateLimitedBatcher,
        sum_across_wallets: bool = False,
    ):
        self.lookup = lookup
        self.batcher = batcher
        self.sum_across_wallets = sum_across_wallets
        self.lookups_attempted = 0
        self.lookups_failed = 0

    @property
    def all_lookups_failed(self) -> bool:
        return self.lookups_attempted > 0 and self.lookups_failed == self.lookups_attempted

    def seed_from_mapping(self, identities: IdentityMap, mapping: dict[str, str]) -> int:
        linked = 0
        for address, handle in mapping.items():
            if identities.link(address, handle, Provenance.MAPPING):
                linked += 1
        logger.info("Seeded %d identities from %d mapped wallets", len(identities), linked)
        return linked

    async def resolve_addresses(self, identities: IdentityMap, addresses: list[str]) -> int:
        """Look up handles for unmapped addresses; unresolved ones are dropped."""
        if not addresses:
            return 0
        logger.info("Resolving handles for %d unmapped wallets...", len(addresses))

        report = await self.batcher.run(
            addresses, self.lookup.resolve_handle_for_address, label="address"
        )
        self.lookups_attempted += len(addresses)
        self.lookups_failed += len(report.failed)

        resolved = 0
        for address, profile in zip(addresses, report.results):
            if profile is None or not profile.handle:
                logger.debug("No handle found for wallet %s, skipping", address)
                identities.dropped.append(address)
                continue
            if identities.link(address, profile.handle, Provenance.RESOLVED, profile.avatar_url):
                resolved += 1

        logger.info(
            "Resolved %d wallets, dropped %d without a handle",
            resolved, len(identities.dropped),
        )
        return resolved

    async def enrich_from_handles(self, identities: IdentityMap) -> int:
        """Add each mapping-only identity's own wallet from a handle lookup."""
        handles = [
            identity.handle
            for identity in identities
            if identity.addresses and identity.provenances() == {Provenance.MAPPING}
        ]
        if not handles:
            return 0
        logger.info("Looking up wallets for %d mapped handles...", len(handles))

        report = await self.batcher.run(
            handles, self.lookup.resolve_address_for_handle, label="handle"
        )
        self.lookups_attempted += len(handles)
        self.lookups_failed += len(report.failed)

        derived = 0
        for handle, profile in zip(handles, report.results):
            if profile is None or not profile.address:
                logger.debug("No wallet found for handle %s", handle)
                continue
            identity = identities.get(handle)
            if profile.address in identity.addresses:
                logger.debug("Wallet %s already known for handle %s", profile.address, handle)
                if profile.avatar_url and not identity.avatar_url:
                    identity.avatar_url = profile.avatar_url
                continue
            if identities.link(profile.address, handle, Provenance.DERIVED, profile.avatar_url):
                derived += 1

        logger.info("Added %d derived wallets", derived)
        return derived

    async def lookup_addresses(self, handles: Iterable[str]) -> dict[str, str | None]:
        """Forward lookups for a list of handles, batched like every other lookup."""
        handles = list(dict.fromkeys(normalize_handle(h) for h in handles if normalize_handle(h)))
        if not handles:
            return {}
        report = await self.batcher.run(
            handles, self.lookup.resolve_address_for_handle, label="handle"
        )
        return {
            handle: profile.address if profile else None
            for handle, profile in zip(handles, report.results)
        }

    async def resolve(
        self, mapping: dict[str, str], qualifying_addresses: Iterable[str]
    ) -> IdentityMap:
        """Run mapping seed, address resolution and optional handle enrichment."""
        identities = IdentityMap()
        self.seed_from_mapping(identities, mapping)

        remaining = []
        seen = set()
        for address in qualifying_addresses:
            address = normalize_address(address)
            if not address or address in seen:
                continue
            seen.add(address)
            if identities.owner_of(address) is None:
                remaining.append(address)

        await self.resolve_addresses(identities, remaining)

        if self.sum_across_wallets:
            await self.enrich_from_handles(identities)

        logger.info("Found %d identities with linked wallets", len(identities))
        return identities
