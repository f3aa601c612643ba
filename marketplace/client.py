"""Async client an instance uses to talk to a marketplace server."""

from typing import Any

import httpx
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from marketplace.auth import (
    InstanceIdentity,
    instance_id_from_repo,
    now_ms,
    private_key_from_base64,
    sign_payload,
)
from marketplace.logging_config import get_logger

logger = get_logger(__name__)


class MarketplaceClientError(Exception):
    """Non-2xx answer from the marketplace."""

    def __init__(self, status_code: int, message: str, body: Any = None):
        self.status_code = status_code
        self.message = message
        self.body = body
        super().__init__(f"{status_code}: {message}")


class MarketplaceClient:
    """
    Signs and sends requests on behalf of one instance.

    Every payload is stamped with ``instance_id``, ``public_key`` and a
    millisecond ``timestamp``, then signed over its canonical encoding.
    The HTTP client can be injected (tests pass one bound to an ASGI app);
    otherwise one is created and owned by this object.
    """

    def __init__(
        self,
        base_url: str,
        private_key: Ed25519PrivateKey,
        repo_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ):
        self.private_key = private_key
        self.repo_url = repo_url
        self.instance_id = instance_id_from_repo(repo_url)
        self.public_key = InstanceIdentity(private_key.public_key()).get_public_key_base64()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_private_key_base64(
        cls, base_url: str, private_key_b64: str, repo_url: str, **kwargs: Any
    ) -> "MarketplaceClient":
        """Build a client from a stored raw private key (see ``private_key_to_base64``)."""
        return cls(base_url, private_key_from_base64(private_key_b64), repo_url, **kwargs)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "MarketplaceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def signed(self, fields: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = {
            **(fields or {}),
            "instance_id": self.instance_id,
            "public_key": self.public_key,
            "timestamp": now_ms(),
        }
        payload["signature"] = sign_payload(self.private_key, payload)
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.is_error:
            message = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                "marketplace_request_failed",
                path=path,
                status_code=response.status_code,
                error=message,
            )
            raise MarketplaceClientError(response.status_code, message or response.reason_phrase, body)
        return body

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def register(self, nickname: str, **profile: Any) -> dict:
        """Register or refresh this instance. ``profile`` takes the optional display fields."""
        return await self._request(
            "POST",
            "/api/register",
            json=self.signed({"repo_url": self.repo_url, "nickname": nickname, **profile}),
        )

    async def heartbeat(self) -> dict:
        return await self._request("POST", "/api/heartbeat", json=self.signed())

    async def update_profile(self, **fields: Any) -> dict:
        return await self._request(
            "PUT", f"/api/profile/{self.instance_id}", json=self.signed(fields)
        )

    async def get_profile(self, instance_id: str | None = None) -> dict:
        return await self._request("GET", f"/api/profile/{instance_id or self.instance_id}")

    async def lan_peers(self) -> list[dict]:
        payload = self.signed()
        body = await self._request("GET", "/api/peers", params=payload)
        return body["peers"]

    # ------------------------------------------------------------------
    # Feature requests
    # ------------------------------------------------------------------

    async def list_feature_requests(self, **filters: Any) -> list[dict]:
        body = await self._request("GET", "/api/feature-requests", params=filters)
        return body["feature_requests"]

    async def submit_feature_request(self, title: str, description: str, category: str) -> dict:
        body = await self._request(
            "POST",
            "/api/feature-requests",
            json=self.signed({"title": title, "description": description, "category": category}),
        )
        return body["feature_request"]

    async def vote_feature_request(self, feature_request_id: str, value: int) -> int:
        body = await self._request(
            "POST",
            f"/api/feature-requests/{feature_request_id}/vote",
            json=self.signed({"value": value}),
        )
        return body["votes"]

    # ------------------------------------------------------------------
    # Forum
    # ------------------------------------------------------------------

    async def list_channels(self) -> list[dict]:
        return (await self._request("GET", "/api/forum/channels"))["channels"]

    async def channel_posts(self, slug: str, **params: Any) -> list[dict]:
        body = await self._request("GET", f"/api/forum/channels/{slug}/posts", params=params)
        return body["posts"]

    async def create_post(
        self,
        channel_id: str,
        title: str,
        body: str,
        poll_options: list[str] | None = None,
        poll_duration_days: int | None = None,
        image_url: str | None = None,
    ) -> dict:
        fields: dict[str, Any] = {"channel_id": channel_id, "title": title, "body": body}
        if poll_options is not None:
            fields["poll_options"] = poll_options
        if poll_duration_days is not None:
            fields["poll_duration_days"] = poll_duration_days
        if image_url is not None:
            fields["image_url"] = image_url
        return await self._request("POST", "/api/forum/posts", json=self.signed(fields))

    async def reply(self, post_id: str, body: str) -> dict:
        return await self._request(
            "POST", f"/api/forum/posts/{post_id}/reply", json=self.signed({"body": body})
        )

    async def get_thread(self, post_id: str) -> dict:
        return await self._request("GET", f"/api/forum/posts/{post_id}")

    async def vote_post(self, post_id: str, value: int) -> dict:
        return await self._request(
            "POST", f"/api/forum/posts/{post_id}/vote", json=self.signed({"value": value})
        )

    async def vote_poll(self, post_id: str, option_index: int) -> dict:
        return await self._request(
            "POST",
            f"/api/forum/posts/{post_id}/poll-vote",
            json=self.signed({"option_index": option_index}),
        )

    async def close_poll(self, post_id: str) -> dict:
        return await self._request(
            "POST", f"/api/forum/posts/{post_id}/poll-close", json=self.signed()
        )

    async def forum_config(self) -> dict:
        return await self._request("GET", "/api/forum/config")

    async def rate_limit_status(self) -> dict:
        return await self._request(
            "GET", "/api/forum/rate-limit", params={"instance_id": self.instance_id}
        )
