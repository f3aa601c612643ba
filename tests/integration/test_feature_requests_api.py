"""Integration tests for feature request submission, voting and moderation."""

import pytest
from sqlalchemy import select

from marketplace.client import MarketplaceClientError
from marketplace.models import Vote


class TestSubmitFeatureRequest:
    """POST /api/feature-requests"""

    @pytest.mark.asyncio
    async def test_submit_returns_limits(self, async_client, instance_a):
        response = await async_client.post(
            "/api/feature-requests",
            json=instance_a.signed(
                {"title": "Calendar sync", "description": "Sync events", "category": "integration"}
            ),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["feature_request"]["votes"] == 0
        assert body["feature_request"]["status"] == "open"
        assert body["limits"]["feature_requests"] == {"used": 1, "limit": 10}

    @pytest.mark.asyncio
    async def test_unknown_category_is_400(self, instance_a):
        with pytest.raises(MarketplaceClientError) as exc:
            await instance_a.submit_feature_request("Title", "Description", "wishlist")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_title_too_long_is_400(self, instance_a):
        with pytest.raises(MarketplaceClientError) as exc:
            await instance_a.submit_feature_request("t" * 201, "Description", "feature")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_daily_quota_exhausted(self, app, instance_a):
        app.state.settings.feature_request_limit_per_day = 1
        await instance_a.submit_feature_request("One", "First", "feature")

        with pytest.raises(MarketplaceClientError) as exc:
            await instance_a.submit_feature_request("Two", "Second", "feature")

        assert exc.value.status_code == 429
        body = exc.value.body
        assert body["limit"] == 1
        assert body["used"] == 1
        assert body["remaining"] == 0
        assert body["resetAt"].endswith("Z")


class TestVoteFeatureRequest:
    """POST /api/feature-requests/{id}/vote"""

    @pytest.mark.asyncio
    async def test_revote_replaces_earlier_vote(self, instance_a, instance_b, db_session):
        fr = await instance_a.submit_feature_request("Webhooks", "Outgoing hooks", "feature")

        assert await instance_b.vote_feature_request(fr["id"], 1) == 1
        assert await instance_b.vote_feature_request(fr["id"], -1) == -1

        votes = (
            await db_session.execute(select(Vote).where(Vote.feature_request_id == fr["id"]))
        ).scalars().all()
        assert len(votes) == 1
        assert votes[0].value == -1

    @pytest.mark.asyncio
    async def test_votes_from_two_instances_add_up(self, instance_a, instance_b):
        fr = await instance_a.submit_feature_request("Themes", "Custom themes", "improvement")

        await instance_a.vote_feature_request(fr["id"], 1)
        total = await instance_b.vote_feature_request(fr["id"], 1)

        assert total == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, 2, -2])
    async def test_value_must_be_plus_or_minus_one(self, instance_a, value):
        fr = await instance_a.submit_feature_request("Voice", "Voice input", "feature")
        with pytest.raises(MarketplaceClientError) as exc:
            await instance_a.vote_feature_request(fr["id"], value)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_request_is_404(self, instance_a):
        with pytest.raises(MarketplaceClientError) as exc:
            await instance_a.vote_feature_request("missing", 1)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_rejected_vote_does_not_consume_quota(self, app, instance_a, instance_b):
        app.state.settings.feature_vote_limit_per_day = 1
        fr = await instance_a.submit_feature_request("Export", "CSV export", "feature")

        with pytest.raises(MarketplaceClientError):
            await instance_b.vote_feature_request("missing", 1)

        assert await instance_b.vote_feature_request(fr["id"], 1) == 1


class TestFeatureRequestScenario:
    @pytest.mark.asyncio
    async def test_submit_vote_and_list(self, async_client, instance_a, instance_b):
        """A heartbeats and submits, B upvotes, the public list reflects both."""
        await instance_a.heartbeat()
        fr = await instance_a.submit_feature_request("Add dark mode", "Dark theme", "feature")
        await instance_b.vote_feature_request(fr["id"], 1)

        response = await async_client.get("/api/feature-requests")

        assert response.status_code == 200
        items = response.json()["feature_requests"]
        item = next(i for i in items if i["id"] == fr["id"])
        assert item["votes"] == 1
        assert item["instance_nickname"] == "Alpha"
        assert item["category"] == "feature"

    @pytest.mark.asyncio
    async def test_list_sorted_by_votes_and_filtered(self, async_client, instance_a, instance_b):
        low = await instance_a.submit_feature_request("Low", "Low", "skill")
        high = await instance_a.submit_feature_request("High", "High", "feature")
        await instance_b.vote_feature_request(high["id"], 1)

        everything = (await async_client.get("/api/feature-requests")).json()
        skills = (await async_client.get("/api/feature-requests", params={"category": "skill"})).json()

        assert [i["id"] for i in everything["feature_requests"]] == [high["id"], low["id"]]
        assert [i["id"] for i in skills["feature_requests"]] == [low["id"]]
        assert skills["count"] == 1


class TestFeatureRequestAdmin:
    """PATCH/DELETE /api/feature-requests/{id}"""

    @pytest.mark.asyncio
    async def test_status_update(self, async_client, instance_a, admin_headers):
        fr = await instance_a.submit_feature_request("Sync", "Sync", "feature")

        response = await async_client.patch(
            f"/api/feature-requests/{fr['id']}",
            json={"status": "in_progress"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_status_update_requires_admin(self, async_client, instance_a):
        fr = await instance_a.submit_feature_request("Sync", "Sync", "feature")
        response = await async_client.patch(
            f"/api/feature-requests/{fr['id']}", json={"status": "completed"}
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_invalid_status_is_400(self, async_client, instance_a, admin_headers):
        fr = await instance_a.submit_feature_request("Sync", "Sync", "feature")
        response = await async_client.patch(
            f"/api/feature-requests/{fr['id']}", json={"status": "shipped"}, headers=admin_headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_delete_removes_votes(self, async_client, instance_a, instance_b, admin_headers, db_session):
        fr = await instance_a.submit_feature_request("Gone", "Gone", "feature")
        await instance_b.vote_feature_request(fr["id"], 1)

        response = await async_client.delete(f"/api/feature-requests/{fr['id']}", headers=admin_headers)

        assert response.status_code == 200
        assert (await async_client.get(f"/api/feature-requests/{fr['id']}")).status_code == 404
        remaining = (
            await db_session.execute(select(Vote).where(Vote.feature_request_id == fr["id"]))
        ).scalars().all()
        assert remaining == []
