"""Instance registry endpoints: register, heartbeat, profiles, directory, LAN peers."""

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import client_ip, hash_ip
from marketplace.config import Settings, get_app_settings
from marketplace.database import get_db
from marketplace.exceptions import (
    InstanceNotFoundError,
    MalformedRequestError,
    PublicKeyMismatchError,
)
from marketplace.logging_config import get_logger
from marketplace.models import Instance
from marketplace.schemas import (
    InstanceProfile,
    LanPeer,
    ProfileUpdatePayload,
    RegisterPayload,
    RegisterResponse,
    SignedPayload,
)
from marketplace.services import registry_service
from marketplace.services.gateway import AttestationGateway, get_gateway, read_json
from marketplace.services.rate_limiter import DAY_MS

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["registry"])


@router.post("/register", response_model=RegisterResponse)
async def register(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
    settings: Settings = Depends(get_app_settings),
):
    """Register (or re-register) an instance. Signed by the key being registered."""
    raw = await read_json(request)
    payload = gateway.authenticate_self_signed(raw, RegisterPayload)

    ip_hash = hash_ip(client_ip(request), settings.ip_hash_salt)
    await gateway.enforce_quota(
        db,
        f"register:{ip_hash}",
        settings.register_limit_per_day,
        DAY_MS,
        "Too many registrations from this network",
    )

    instance, created = await registry_service.register_instance(db, payload, ip_hash)
    response.status_code = 201 if created else 200
    return RegisterResponse(
        instance_id=instance.id,
        created=created,
        profile=InstanceProfile.model_validate(instance),
    )


@router.post("/heartbeat")
async def heartbeat(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
):
    """Signed liveness ping."""
    raw = await read_json(request)
    _, instance = await gateway.authenticate(db, raw, SignedPayload)
    instance = await registry_service.heartbeat(db, instance)
    return {
        "success": True,
        "instance_id": instance.id,
        "last_heartbeat": InstanceProfile.model_validate(instance).last_heartbeat,
    }


@router.get("/profile/{instance_id}", response_model=InstanceProfile)
async def get_profile(instance_id: str, db: AsyncSession = Depends(get_db)):
    instance = await db.get(Instance, instance_id)
    if instance is None:
        raise InstanceNotFoundError(instance_id)
    return instance


@router.api_route("/profile/{instance_id}", methods=["PUT", "POST"], response_model=InstanceProfile)
async def update_profile(
    instance_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
):
    """Signed update of the holder's own display fields."""
    raw = await read_json(request)
    payload, instance = await gateway.authenticate(db, raw, ProfileUpdatePayload)
    return await registry_service.update_profile(db, instance, instance_id, payload)


@router.get("/instances")
async def list_instances(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Public directory, online first."""
    instances, total = await registry_service.list_instances(db, limit=limit, offset=offset)
    return {
        "instances": [InstanceProfile.model_validate(i) for i in instances],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/peers")
async def lan_peers(
    instance_id: str = Query(..., min_length=1),
    public_key: str = Query(..., min_length=1),
    timestamp: str = Query(...),
    signature: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
    gateway: AttestationGateway = Depends(get_gateway),
):
    """
    Instances registered from the same hashed address as the caller.

    The query string carries ``instance_id``, ``public_key`` and
    ``timestamp`` signed as a JSON object with an integer timestamp.
    """
    try:
        ts = int(timestamp)
    except ValueError as e:
        raise MalformedRequestError("timestamp must be an integer") from e

    raw = {
        "instance_id": instance_id,
        "public_key": public_key,
        "timestamp": ts,
        "signature": signature,
    }
    _, instance = await gateway.authenticate(db, raw, SignedPayload)
    if instance.public_key != public_key:
        raise PublicKeyMismatchError("public_key does not match the registered key")

    peers = await registry_service.find_lan_peers(db, instance)
    await registry_service.heartbeat(db, instance)
    logger.info("lan_peers_listed", instance_id=instance.id, count=len(peers))
    return {"peers": [LanPeer.model_validate(p) for p in peers]}
