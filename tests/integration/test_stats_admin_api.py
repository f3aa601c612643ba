"""Integration tests for public stats, health, versions and the admin directory."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from marketplace.models import Instance, utcnow


class TestPublicStats:
    """GET /api/stats"""

    @pytest.mark.asyncio
    async def test_empty_marketplace(self, async_client):
        body = (await async_client.get("/api/stats")).json()

        assert body["instances"] == {"total": 0, "online": 0}
        assert body["forum"]["channels"] == 4
        assert body["forum"]["posts"] == 0
        assert body["feature_requests"]["open"] == 0

    @pytest.mark.asyncio
    async def test_counts_activity(self, async_client, instance_a, instance_b):
        root = (await instance_a.create_post("showcase", "Demo", "Look"))["post"]
        await instance_b.reply(root["id"], "Nice")
        await instance_a.submit_feature_request("Idea", "Details", "skill")

        body = (await async_client.get("/api/stats")).json()

        assert body["instances"]["total"] == 2
        assert body["forum"]["posts"] == 1
        assert body["forum"]["replies"] == 1
        assert body["forum"]["top_channels"][0]["id"] == "showcase"
        assert body["forum"]["recent_posts"][0]["author_nickname"] == "Alpha"
        assert body["feature_requests"]["open"] == 1


class TestHealth:
    @pytest.mark.asyncio
    async def test_root_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    @pytest.mark.asyncio
    async def test_store_health(self, async_client):
        response = await async_client.get("/api/health")

        assert response.status_code == 200
        assert response.json()["database"] == "ok"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, async_client):
        response = await async_client.get("/health", headers={"x-request-id": "abc123"})
        assert response.headers["x-request-id"] == "abc123"


class TestAdminDirectory:
    """GET /api/admin/instances"""

    @pytest.mark.asyncio
    async def test_lists_activity_counts(self, async_client, admin_headers, instance_a):
        await instance_a.create_post("general", "Hi", "There")
        await instance_a.submit_feature_request("Idea", "Details", "feature")

        body = (await async_client.get("/api/admin/instances", headers=admin_headers)).json()

        entry = next(i for i in body["instances"] if i["id"] == instance_a.instance_id)
        assert entry["post_count"] == 1
        assert entry["feature_request_count"] == 1
        assert len(entry["ip_hash_short"]) == 12

    @pytest.mark.asyncio
    async def test_stale_instances_marked_offline(self, async_client, admin_headers, instance_a, db_session):
        await db_session.execute(
            update(Instance)
            .where(Instance.id == instance_a.instance_id)
            .values(last_heartbeat=utcnow() - timedelta(hours=2))
        )
        await db_session.commit()

        body = (await async_client.get("/api/admin/instances", headers=admin_headers)).json()

        entry = next(i for i in body["instances"] if i["id"] == instance_a.instance_id)
        assert entry["online"] is False
        assert body["online"] == 0


class TestReleases:
    """/api/admin/releases and GET /api/version"""

    @pytest.mark.asyncio
    async def test_release_lifecycle(self, async_client, admin_headers):
        assert (await async_client.get("/api/version")).json()["version"] is None

        created = await async_client.post(
            "/api/admin/releases",
            json={"version": "1.2.0", "title": "Polls", "notes": "Forum polls"},
            headers=admin_headers,
        )
        duplicate = await async_client.post(
            "/api/admin/releases", json={"version": "1.2.0"}, headers=admin_headers
        )

        assert created.status_code == 201
        assert duplicate.status_code == 409
        assert (await async_client.get("/api/version")).json()["version"] == "1.2.0"

        release_id = created.json()["id"]
        listed = (await async_client.get("/api/admin/releases", headers=admin_headers)).json()
        assert [r["id"] for r in listed["releases"]] == [release_id]

        deleted = await async_client.delete(
            "/api/admin/releases", params={"id": release_id}, headers=admin_headers
        )
        assert deleted.status_code == 200
        assert (await async_client.get("/api/version")).json()["release"] is None

    @pytest.mark.asyncio
    async def test_delete_unknown_release_is_404(self, async_client, admin_headers):
        response = await async_client.delete(
            "/api/admin/releases", params={"id": "nope"}, headers=admin_headers
        )
        assert response.status_code == 404
