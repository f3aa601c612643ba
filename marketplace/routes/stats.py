"""Public stats, health and version endpoints."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.schemas import ReleaseResponse
from marketplace.services import release_service, stats_service

router = APIRouter(prefix="/api", tags=["stats"])


@router.get("/stats")
async def public_stats(db: AsyncSession = Depends(get_db)):
    return await stats_service.public_stats(db)


@router.get("/health")
async def store_health(db: AsyncSession = Depends(get_db)):
    """Store reachability; 503 when the database does not answer."""
    health = await stats_service.store_health(db)
    if health["status"] != "ok":
        return JSONResponse(status_code=503, content=health)
    return health


@router.get("/version")
async def latest_version(db: AsyncSession = Depends(get_db)):
    release = await release_service.latest_release(db)
    if release is None:
        return {"version": None, "release": None}
    return {"version": release.version, "release": ReleaseResponse.model_validate(release)}
