"""Tests for social.ArenaSocialClient with requests.get mocked out."""

from unittest.mock import MagicMock

import pytest
import requests

from social import ArenaSocialClient, HandleProfile, RateLimitedError, SocialApiError, WalletProfile


def response(status=200, payload=None, bad_json=False):
    resp = MagicMock()
    resp.status_code = status
    if bad_json:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = payload
    return resp


def client_returning(resp) -> tuple[ArenaSocialClient, MagicMock]:
    http = MagicMock()
    http.get.return_value = resp
    client = ArenaSocialClient(
        http=http,
        social_api_url="https://social.test/user_info",
        handle_api_url="https://social.test/user/handle",
    )
    return client, http


class TestHandleForAddress:
    def test_found(self):
        client, http = client_returning(
            response(payload=[{"twitter_handle": "Alice", "twitter_pfp_url": "https://img/a"}])
        )
        assert client.fetch_handle_for_address("0xABC") == HandleProfile("alice", "https://img/a")
        http.get.assert_called_once_with(
            "https://social.test/user_info",
            params={"user_address": "eq.0xabc"},
            timeout=30,
        )

    def test_empty_list_is_no_profile(self):
        client, _ = client_returning(response(payload=[]))
        assert client.fetch_handle_for_address("0xabc") is None

    def test_404_is_no_profile(self):
        client, _ = client_returning(response(status=404))
        assert client.fetch_handle_for_address("0xabc") is None

    def test_429_is_retryable(self):
        client, _ = client_returning(response(status=429))
        with pytest.raises(RateLimitedError):
            client.fetch_handle_for_address("0xabc")

    def test_server_error(self):
        client, _ = client_returning(response(status=503))
        with pytest.raises(SocialApiError):
            client.fetch_handle_for_address("0xabc")

    def test_invalid_json(self):
        client, _ = client_returning(response(bad_json=True))
        with pytest.raises(SocialApiError):
            client.fetch_handle_for_address("0xabc")

    def test_network_error_is_wrapped(self):
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("refused")
        client = ArenaSocialClient(http=http)
        with pytest.raises(SocialApiError):
            client.fetch_handle_for_address("0xabc")


class TestAddressForHandle:
    def test_found_with_picture_fallback(self):
        client, http = client_returning(
            response(payload={"user": {"dynamicAddress": "0xDEF", "twitterPicture": "https://img/b"}})
        )
        assert client.fetch_address_for_handle("@Bob") == WalletProfile("0xdef", "https://img/b")
        assert http.get.call_args.kwargs["params"] == {"handle": "bob"}

    def test_missing_user(self):
        client, _ = client_returning(response(payload={}))
        assert client.fetch_address_for_handle("bob") is None

    async def test_async_wrapper(self):
        client, _ = client_returning(
            response(payload={"user": {"dynamicAddress": "0xdef", "twitter_pfp_url": None}})
        )
        assert await client.resolve_address_for_handle("bob") == WalletProfile("0xdef", None)


class TestEndpoints:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("SOCIAL_API_URL", "https://env.test/info")
        client = ArenaSocialClient(http=MagicMock())
        assert client.social_api_url == "https://env.test/info"

    def test_default_calls_go_through_requests_get(self, monkeypatch):
        get = MagicMock(return_value=response(payload=[]))
        monkeypatch.setattr(requests, "get", get)
        client = ArenaSocialClient(social_api_url="https://social.test/user_info")

        client.fetch_handle_for_address("0xabc")
        client.fetch_handle_for_address("0xdef")

        assert get.call_count == 2
        assert not hasattr(client, "session")
