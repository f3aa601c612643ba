"""Attestation gateway: the validation pipeline every signed write passes through.

Order matters and is cheapest-first:

1. structural validation of the payload (400)
2. timestamp freshness (400), before any database I/O
3. instance lookup by claimed id (404)
4. signature over the canonical payload, against the stored key (401)
5. per-action quota (429)

Domain rules and the mutation itself belong to the calling service.
"""

from typing import Any, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.auth import (
    build_signature_data,
    is_timestamp_valid,
    is_valid_public_key,
    verify_signature,
)
from marketplace.exceptions import (
    InstanceNotFoundError,
    InvalidSignatureError,
    MalformedRequestError,
    RateLimitExceededError,
    StaleTimestampError,
)
from marketplace.logging_config import bind_instance_context, get_logger
from marketplace.models import Instance, utcnow
from marketplace.services.rate_limiter import RateLimiter, RateLimitResult

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def parse_payload(raw: Any, schema: type[T]) -> T:
    """Validate a raw JSON body against ``schema``; any failure is a 400."""
    if not isinstance(raw, dict):
        raise MalformedRequestError("Request body must be a JSON object")
    try:
        return schema.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"])
        message = f"{field}: {first['msg']}" if field else first["msg"]
        raise MalformedRequestError(message) from e


async def read_json(request: Request) -> Any:
    """Request body as parsed JSON, or a 400 when it is not JSON."""
    try:
        return await request.json()
    except ValueError as e:
        raise MalformedRequestError("Invalid JSON body") from e


class AttestationGateway:
    """Authenticates signed instance payloads and enforces quotas."""

    def __init__(self, rate_limiter: RateLimiter):
        self.rate_limiter = rate_limiter

    @staticmethod
    def check_freshness(timestamp: int) -> None:
        if not is_timestamp_valid(timestamp):
            logger.info("timestamp_rejected", timestamp=timestamp)
            raise StaleTimestampError()

    @staticmethod
    def check_signature(public_key: str, signature: str, raw: dict[str, Any], instance_id: str) -> None:
        if not verify_signature(public_key, signature, build_signature_data(raw)):
            logger.warning("signature_invalid", instance_id=instance_id)
            raise InvalidSignatureError()

    async def authenticate(
        self, db: AsyncSession, raw: Any, schema: type[T]
    ) -> tuple[T, Instance]:
        """Steps 1-4 for a payload signed by an already registered instance."""
        payload = parse_payload(raw, schema)
        self.check_freshness(payload.timestamp)

        instance = await db.get(Instance, payload.instance_id)
        if instance is None:
            raise InstanceNotFoundError(payload.instance_id)

        self.check_signature(instance.public_key, payload.signature, raw, instance.id)
        bind_instance_context(instance.id)
        return payload, instance

    def authenticate_self_signed(self, raw: Any, schema: type[T]) -> T:
        """Steps 1, 2 and 4 for a payload signed by the key it carries (registration)."""
        payload = parse_payload(raw, schema)
        self.check_freshness(payload.timestamp)
        if not is_valid_public_key(payload.public_key):
            raise MalformedRequestError("public_key must be a base64 Ed25519 public key")
        self.check_signature(payload.public_key, payload.signature, raw, "unregistered")
        return payload

    async def enforce_quota(
        self,
        db: AsyncSession,
        key: str,
        limit: int,
        window_ms: int,
        message: str = "Rate limit exceeded",
    ) -> RateLimitResult:
        """Step 5: consume one unit of ``key``'s quota or raise 429."""
        result = await self.rate_limiter.hit(db, key, limit, window_ms)
        if not result.allowed:
            raise RateLimitExceededError(
                message,
                limit=result.limit,
                used=result.used,
                remaining=result.remaining,
                reset_at=result.reset_at_iso,
            )
        return result

    @staticmethod
    def touch(instance: Instance) -> None:
        """Best-effort heartbeat on the acting instance; flushed with the mutation."""
        now = utcnow()
        instance.online = True
        instance.last_heartbeat = now


def get_gateway(request: Request) -> AttestationGateway:
    """FastAPI dependency: the gateway built at startup."""
    return request.app.state.gateway
