"""Exception hierarchy for the marketplace and its JSON error rendering."""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketplace.logging_config import get_logger

logger = get_logger(__name__)


class MarketplaceError(Exception):
    """Base exception for marketplace errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        error_type: str = "marketplace_error",
        status_code: int | None = None,
        extra: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_type = error_type
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "type": self.error_type, **self.extra}


class MalformedRequestError(MarketplaceError):
    """Raised when a request is missing fields or has invalid ones."""

    def __init__(self, message: str = "Malformed request", extra: dict | None = None):
        super().__init__(message, "malformed_request", status.HTTP_400_BAD_REQUEST, extra)


class StaleTimestampError(MarketplaceError):
    """Raised when a signed payload falls outside the freshness window."""

    def __init__(self, message: str = "Request timestamp expired or invalid"):
        super().__init__(message, "stale_timestamp", status.HTTP_400_BAD_REQUEST)


class InstanceNotFoundError(MarketplaceError):
    """Raised when the claimed instance is not registered."""

    def __init__(self, instance_id: str):
        super().__init__("Instance not found", "instance_not_found", status.HTTP_404_NOT_FOUND)
        self.instance_id = instance_id


class ResourceNotFoundError(MarketplaceError):
    """Raised when a post, channel, feature request or release does not exist."""

    def __init__(self, resource: str):
        super().__init__(
            f"{resource} not found",
            f"{resource.lower().replace(' ', '_')}_not_found",
            status.HTTP_404_NOT_FOUND,
        )
        self.resource = resource


class InvalidSignatureError(MarketplaceError):
    """Raised when signature verification fails."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, "invalid_signature", status.HTTP_401_UNAUTHORIZED)


class PublicKeyMismatchError(MarketplaceError):
    """Raised when a registered claim is re-registered under a different key."""

    def __init__(self, message: str = "Instance already registered with a different public key"):
        super().__init__(message, "public_key_mismatch", status.HTTP_403_FORBIDDEN)


class AdminAuthError(MarketplaceError):
    """Raised when the admin credential is missing (403) or wrong (401)."""

    def __init__(self, missing: bool):
        if missing:
            super().__init__("Admin key required", "admin_key_required", status.HTTP_403_FORBIDDEN)
        else:
            super().__init__("Invalid admin key", "admin_key_invalid", status.HTTP_401_UNAUTHORIZED)


class RateLimitExceededError(MarketplaceError):
    """Raised when an action-class quota is exhausted."""

    def __init__(self, message: str, limit: int, used: int, remaining: int, reset_at: str):
        super().__init__(
            message,
            "rate_limit_exceeded",
            status.HTTP_429_TOO_MANY_REQUESTS,
            {"limit": limit, "used": used, "remaining": remaining, "resetAt": reset_at},
        )
        self.limit = limit
        self.used = used
        self.remaining = remaining
        self.reset_at = reset_at


class DomainRuleError(MarketplaceError):
    """Raised when a request violates a domain invariant (self-vote, depth, poll window)."""

    def __init__(self, message: str, error_type: str = "domain_rule_violation"):
        super().__init__(message, error_type, status.HTTP_400_BAD_REQUEST)


class ThreadLockedError(MarketplaceError):
    """Raised when replying anywhere under a locked root post."""

    def __init__(self):
        super().__init__("Thread is locked", "thread_locked", status.HTTP_403_FORBIDDEN)


class ForbiddenError(MarketplaceError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, "forbidden", status.HTTP_403_FORBIDDEN)


class ConflictError(MarketplaceError):
    def __init__(self, message: str):
        super().__init__(message, "conflict", status.HTTP_409_CONFLICT)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_rejected",
        path=request.url.path,
        error_type=exc.error_type,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    if field:
        message = f"{field}: {message}"
    logger.info("request_validation_failed", path=request.url.path, field=field)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": message, "type": "malformed_request"},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
