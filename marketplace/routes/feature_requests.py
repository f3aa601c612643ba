"""Feature request endpoints: list, submit, vote, and admin status/delete."""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import require_admin
from marketplace.config import Settings, get_app_settings
from marketplace.database import get_db
from marketplace.exceptions import ResourceNotFoundError
from marketplace.models import FeatureRequest
from marketplace.schemas import (
    FeatureRequestCreate,
    FeatureRequestResponse,
    FeatureRequestStatusUpdate,
    VotePayload,
)
from marketplace.services import feature_service
from marketplace.services.gateway import AttestationGateway, get_gateway, read_json
from marketplace.services.rate_limiter import DAY_MS

router = APIRouter(prefix="/api/feature-requests", tags=["feature-requests"])


@router.get("")
async def list_feature_requests(
    category: str | None = Query(None, pattern=r"^(skill|feature|integration|improvement)$"),
    status: str | None = Query(None, pattern=r"^(open|in_progress|completed|declined)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    items = await feature_service.list_feature_requests(
        db, category=category, status=status, limit=limit, offset=offset
    )
    return {"feature_requests": items, "count": len(items)}


@router.get("/{feature_request_id}", response_model=FeatureRequestResponse)
async def get_feature_request(feature_request_id: str, db: AsyncSession = Depends(get_db)):
    return await feature_service.get_feature_request(db, feature_request_id)


@router.post("", status_code=201)
async def submit_feature_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
):
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, FeatureRequestCreate)
    quota = await gateway.enforce_quota(
        db,
        f"feature-request:{instance.id}",
        settings.feature_request_limit_per_day,
        DAY_MS,
        "Daily feature request limit reached",
    )
    gateway.touch(instance)
    fr = await feature_service.create_feature_request(db, instance, payload)
    return {
        "success": True,
        "feature_request": fr,
        "limits": {"feature_requests": {"used": quota.used, "limit": quota.limit}},
    }


@router.post("/{feature_request_id}/vote")
async def vote_feature_request(
    feature_request_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
):
    """Signed +1/-1; a repeat vote replaces the earlier one."""
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, VotePayload)
    if await db.get(FeatureRequest, feature_request_id) is None:
        raise ResourceNotFoundError("Feature request")

    await gateway.enforce_quota(
        db,
        f"feature-vote:{instance.id}",
        settings.feature_vote_limit_per_day,
        DAY_MS,
        "Daily vote limit reached",
    )
    gateway.touch(instance)
    total = await feature_service.vote_feature_request(
        db, feature_request_id, instance.id, payload.value
    )
    return {"success": True, "feature_request_id": feature_request_id, "votes": total}


@router.patch(
    "/{feature_request_id}",
    response_model=FeatureRequestResponse,
    dependencies=[Depends(require_admin)],
)
async def update_feature_request_status(
    feature_request_id: str,
    body: FeatureRequestStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    return await feature_service.update_status(db, feature_request_id, body.status)


@router.delete("/{feature_request_id}", dependencies=[Depends(require_admin)])
async def delete_feature_request(feature_request_id: str, db: AsyncSession = Depends(get_db)):
    await feature_service.delete_feature_request(db, feature_request_id)
    return {"success": True, "deleted": feature_request_id}
