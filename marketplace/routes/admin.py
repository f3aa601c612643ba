"""Admin-only directory and release changelog endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import require_admin
from marketplace.config import Settings, get_app_settings
from marketplace.database import get_db
from marketplace.schemas import AdminInstance, ReleaseCreate, ReleaseResponse
from marketplace.services import registry_service, release_service

router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


@router.get("/instances")
async def list_all_instances(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
):
    """Every instance, after marking stale ones offline."""
    await registry_service.mark_stale_offline(db, settings.stale_after_minutes)
    await db.commit()

    rows = await registry_service.admin_directory(db)
    instances = []
    for row in rows:
        item = AdminInstance.model_validate(row["instance"])
        item.ip_hash_short = row["ip_hash_short"]
        item.feature_request_count = row["feature_request_count"]
        item.post_count = row["post_count"]
        instances.append(item)
    return {
        "instances": instances,
        "total": len(instances),
        "online": sum(1 for i in instances if i.online),
    }


@router.get("/releases")
async def list_releases(db: AsyncSession = Depends(get_db)):
    releases = await release_service.list_releases(db)
    return {"releases": [ReleaseResponse.model_validate(r) for r in releases]}


@router.post("/releases", response_model=ReleaseResponse, status_code=201)
async def create_release(body: ReleaseCreate, db: AsyncSession = Depends(get_db)):
    return await release_service.create_release(db, body)


@router.delete("/releases")
async def delete_release(
    id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    await release_service.delete_release(db, id)
    return {"success": True, "deleted": id}
