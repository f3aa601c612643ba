"""Tests for the instance-side marketplace client."""

import json

import httpx
import pytest

from marketplace.auth import (
    build_signature_data,
    generate_instance_keypair,
    private_key_to_base64,
    verify_signature,
)
from marketplace.client import MarketplaceClient, MarketplaceClientError
from tests.factories import InstanceFactory


def _client(handler) -> MarketplaceClient:
    private_key, _ = generate_instance_keypair()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return MarketplaceClient("http://test", private_key, "https://github.com/x/y", http_client=http)


class TestMarketplaceClient:
    @pytest.mark.asyncio
    async def test_signed_payload_verifies(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        client = _client(handler)
        await client.heartbeat()

        assert seen["instance_id"] == client.instance_id
        assert verify_signature(client.public_key, seen["signature"], build_signature_data(seen))

    @pytest.mark.asyncio
    async def test_error_carries_status_and_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "Daily vote limit reached", "limit": 20})

        client = _client(handler)
        with pytest.raises(MarketplaceClientError) as exc:
            await client.vote_post("p1", 1)

        assert exc.value.status_code == 429
        assert exc.value.message == "Daily vote limit reached"
        assert exc.value.body["limit"] == 20

    @pytest.mark.asyncio
    async def test_non_json_error_uses_reason(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        client = _client(handler)
        with pytest.raises(MarketplaceClientError) as exc:
            await client.forum_config()

        assert exc.value.status_code == 502
        assert exc.value.body is None

    def test_restore_from_stored_key(self):
        private_key, _ = generate_instance_keypair()
        original = MarketplaceClient("http://test", private_key, "https://github.com/x/y")
        restored = MarketplaceClient.from_private_key_base64(
            "http://test", private_key_to_base64(private_key), "https://github.com/x/y"
        )

        assert restored.public_key == original.public_key
        assert restored.instance_id == original.instance_id

    @pytest.mark.asyncio
    async def test_injected_http_client_not_closed(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        await client.close()
        assert not client._client.is_closed


class TestInstanceFactory:
    def test_repo_urls_are_unique(self):
        first = InstanceFactory.next_repo_url()
        second = InstanceFactory.next_repo_url()
        assert first != second
        assert InstanceFactory._counter >= 2

    def test_profile_nickname_follows_counter(self):
        InstanceFactory.next_repo_url()
        assert InstanceFactory.profile()["nickname"] == f"Bot{InstanceFactory._counter}"
