"""Tests for the admin credential check."""

import pytest
from httpx import ASGITransport, AsyncClient

from marketplace.auth import constant_time_compare
from marketplace.config import Settings
from marketplace.main import create_app


class TestAdminCredential:
    def test_constant_time_compare(self):
        assert constant_time_compare("abc", "abc")
        assert not constant_time_compare("abc", "abd")

    @pytest.mark.asyncio
    async def test_missing_key_is_403(self, async_client):
        response = await async_client.get("/api/admin/instances")
        assert response.status_code == 403
        assert response.json()["type"] == "admin_key_required"

    @pytest.mark.asyncio
    async def test_wrong_key_is_401(self, async_client):
        response = await async_client.get(
            "/api/admin/instances", headers={"x-admin-key": "nope"}
        )
        assert response.status_code == 401
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_header_accepted(self, async_client, admin_headers):
        response = await async_client.get(
            "/api/admin/instances", headers=admin_headers
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_query_param_accepted(self, async_client, admin_headers):
        response = await async_client.get(
            "/api/admin/instances", params={"admin_key": admin_headers["x-admin-key"]}
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_empty_admin_key_disables_admin_surface(self):
        app = create_app(Settings(database_url="sqlite+aiosqlite:///:memory:", admin_key=""))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/api/admin/instances", headers={"x-admin-key": ""})
            assert response.status_code == 403
            response = await client.get("/api/admin/instances", headers={"x-admin-key": "anything"})
            assert response.status_code == 401
        await app.state.database.dispose()
