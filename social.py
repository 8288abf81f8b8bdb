"""
HolderRank Social Profile Client
═══════════════════════════════════════════════════════════════════════════════
Looks up the social handle behind a wallet address, and the wallet behind a
handle, on the Arena social API.

A 404 or an empty payload means "no profile" and returns None. Rate limiting
(429) and server errors raise, so the batcher can retry them.

Environment Variables (in .env file):
    SOCIAL_API_URL=https://api.arena.trade/user_info
    SOCIAL_HANDLE_API_URL=https://api.starsarena.com/user/handle
"""

import asyncio
import logging
import os
from typing import NamedTuple

import requests

from models import normalize_address, normalize_handle

logger = logging.getLogger(__name__)

DEFAULT_SOCIAL_API_URL = "https://api.arena.trade/user_info"
DEFAULT_HANDLE_API_URL = "https://api.starsarena.com/user/handle"
REQUEST_TIMEOUT = 30


class SocialApiError(Exception):
    """The social API answered with an unexpected status or could not be reached."""


class RateLimitedError(SocialApiError):
    """The social API answered 429."""


class HandleProfile(NamedTuple):
    handle: str
    avatar_url: str | None


class WalletProfile(NamedTuple):
    address: str
    avatar_url: str | None


class ArenaSocialClient:
    """Blocking requests-based client with async wrappers for the batcher.

    Every call goes through requests.get with a session of its own; the client
    holds no connection state between calls.
    """

    def __init__(
        self,
        http=None,
        social_api_url: str | None = None,
        handle_api_url: str | None = None,
        timeout: int = REQUEST_TIMEOUT,
    ):
        self.http = http or requests
        self.social_api_url = social_api_url or os.getenv(
            "SOCIAL_API_URL", DEFAULT_SOCIAL_API_URL
        )
        self.handle_api_url = handle_api_url or os.getenv(
            "SOCIAL_HANDLE_API_URL", DEFAULT_HANDLE_API_URL
        )
        self.timeout = timeout

    def _get_json(self, url: str, params: dict):
        try:
            response = self.http.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise SocialApiError(f"Request to {url} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code == 429:
            raise RateLimitedError(f"Rate limited by {url}")
        if response.status_code >= 400:
            raise SocialApiError(f"{url} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise SocialApiError(f"{url} returned invalid JSON") from e

    def fetch_handle_for_address(self, address: str) -> HandleProfile | None:
        """Return the handle linked to a wallet, or None if there is no profile."""
        data = self._get_json(
            self.social_api_url,
            {"user_address": f"eq.{normalize_address(address)}"},
        )
        # The endpoint returns a list; one row per address
        if not data:
            return None
        row = data[0] if isinstance(data, list) else data
        handle = normalize_handle(row.get("twitter_handle") or "")
        if not handle:
            return None
        return HandleProfile(handle, row.get("twitter_pfp_url") or None)

    def fetch_address_for_handle(self, handle: str) -> WalletProfile | None:
        """Return the wallet linked to a handle, or None if there is none."""
        data = self._get_json(self.handle_api_url, {"handle": normalize_handle(handle)})
        user = (data or {}).get("user") or {}
        address = normalize_address(user.get("dynamicAddress") or "")
        if not address:
            return None
        avatar = user.get("twitter_pfp_url") or user.get("twitterPicture") or None
        return WalletProfile(address, avatar)

    async def resolve_handle_for_address(self, address: str) -> HandleProfile | None:
        return await asyncio.to_thread(self.fetch_handle_for_address, address)

    async def resolve_address_for_handle(self, handle: str) -> WalletProfile | None:
        return await asyncio.to_thread(self.fetch_address_for_handle, handle)
