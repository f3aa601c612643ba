"""Feature requests and their one-vote-per-instance tallies."""

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.exceptions import ResourceNotFoundError
from marketplace.logging_config import get_logger
from marketplace.models import FeatureRequest, Instance, Vote, utcnow
from marketplace.schemas import FeatureRequestCreate, FeatureRequestResponse
from marketplace.services.registry_service import dialect_insert

logger = get_logger(__name__)


def _to_response(fr: FeatureRequest, nickname: str | None) -> FeatureRequestResponse:
    response = FeatureRequestResponse.model_validate(fr)
    response.instance_nickname = nickname
    return response


async def list_feature_requests(
    db: AsyncSession,
    category: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[FeatureRequestResponse]:
    """Most-voted first, newest first among ties."""
    query = select(FeatureRequest, Instance.nickname).outerjoin(
        Instance, FeatureRequest.instance_id == Instance.id
    )
    if category:
        query = query.where(FeatureRequest.category == category)
    if status:
        query = query.where(FeatureRequest.status == status)
    query = (
        query.order_by(FeatureRequest.votes.desc(), FeatureRequest.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    rows = (await db.execute(query)).all()
    return [_to_response(fr, nickname) for fr, nickname in rows]


async def get_feature_request(db: AsyncSession, feature_request_id: str) -> FeatureRequestResponse:
    row = (
        await db.execute(
            select(FeatureRequest, Instance.nickname)
            .outerjoin(Instance, FeatureRequest.instance_id == Instance.id)
            .where(FeatureRequest.id == feature_request_id)
        )
    ).first()
    if row is None:
        raise ResourceNotFoundError("Feature request")
    return _to_response(row[0], row[1])


async def create_feature_request(
    db: AsyncSession, instance: Instance, payload: FeatureRequestCreate
) -> FeatureRequestResponse:
    fr = FeatureRequest(
        instance_id=instance.id,
        title=payload.title.strip(),
        description=payload.description.strip(),
        category=payload.category,
    )
    db.add(fr)
    await db.commit()
    await db.refresh(fr)

    logger.info("feature_request_created", feature_request_id=fr.id, category=fr.category)
    return _to_response(fr, instance.nickname)


async def vote_feature_request(
    db: AsyncSession, feature_request_id: str, instance_id: str, value: int
) -> int:
    """
    Record ``instance_id``'s vote, replacing any earlier one.

    The stored total is recomputed from the current vote rows, never
    incremented, so repeat votes converge instead of stacking.
    """
    fr = await db.get(FeatureRequest, feature_request_id)
    if fr is None:
        raise ResourceNotFoundError("Feature request")

    insert = dialect_insert(db)
    stmt = insert(Vote).values(
        feature_request_id=feature_request_id,
        instance_id=instance_id,
        value=value,
        created_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Vote.feature_request_id, Vote.instance_id],
        set_={"value": stmt.excluded.value, "created_at": stmt.excluded.created_at},
    )
    await db.execute(stmt)

    total = (
        await db.execute(
            select(func.coalesce(func.sum(Vote.value), 0)).where(
                Vote.feature_request_id == feature_request_id
            )
        )
    ).scalar()
    fr.votes = int(total or 0)
    fr.updated_at = utcnow()
    await db.commit()

    logger.info(
        "feature_request_voted",
        feature_request_id=feature_request_id,
        instance_id=instance_id,
        value=value,
        total=fr.votes,
    )
    return fr.votes


async def update_status(db: AsyncSession, feature_request_id: str, status: str) -> FeatureRequestResponse:
    fr = await db.get(FeatureRequest, feature_request_id)
    if fr is None:
        raise ResourceNotFoundError("Feature request")
    fr.status = status
    fr.updated_at = utcnow()
    await db.commit()
    logger.info("feature_request_status_changed", feature_request_id=fr.id, status=status)
    return await get_feature_request(db, feature_request_id)


async def delete_feature_request(db: AsyncSession, feature_request_id: str) -> None:
    fr = await db.get(FeatureRequest, feature_request_id)
    if fr is None:
        raise ResourceNotFoundError("Feature request")
    await db.execute(delete(Vote).where(Vote.feature_request_id == feature_request_id))
    await db.delete(fr)
    await db.commit()
    logger.info("feature_request_deleted", feature_request_id=feature_request_id)
