"""Cryptographic identity, request signing and the admin credential check."""

import base64
import hashlib
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from fastapi import Request

from marketplace.exceptions import AdminAuthError
from marketplace.logging_config import get_logger

logger = get_logger(__name__)

# Maximum allowed skew, in either direction, between a payload timestamp and now.
TIMESTAMP_WINDOW_MS = 5 * 60 * 1000

ADMIN_HEADER = "x-admin-key"
ADMIN_QUERY_PARAM = "admin_key"


# ---------------------------------------------------------------------------
# Cryptographic Identity
# ---------------------------------------------------------------------------


@dataclass
class InstanceIdentity:
    """An instance's Ed25519 public key."""

    public_key: Ed25519PublicKey

    @classmethod
    def from_public_key_bytes(cls, public_key_bytes: bytes) -> "InstanceIdentity":
        """Create identity from raw public key bytes (32 bytes)."""
        return cls(public_key=Ed25519PublicKey.from_public_bytes(public_key_bytes))

    @classmethod
    def from_public_key_base64(cls, b64: str) -> "InstanceIdentity":
        """Create identity from base64-encoded raw public key."""
        return cls.from_public_key_bytes(base64.b64decode(b64, validate=True))

    def verify_signature(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature from this instance."""
        try:
            self.public_key.verify(signature, message)
            return True
        except Exception:
            return False

    def get_public_key_base64(self) -> str:
        """Get base64-encoded raw public key."""
        raw_bytes = self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return base64.b64encode(raw_bytes).decode()


def generate_instance_keypair() -> tuple[Ed25519PrivateKey, InstanceIdentity]:
    """Generate a new instance keypair."""
    private_key = Ed25519PrivateKey.generate()
    public_key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return private_key, InstanceIdentity.from_public_key_bytes(public_key_bytes)


def private_key_from_base64(b64: str) -> Ed25519PrivateKey:
    """Load a raw 32-byte Ed25519 private key from base64."""
    return Ed25519PrivateKey.from_private_bytes(base64.b64decode(b64))


def private_key_to_base64(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(raw).decode()


# ---------------------------------------------------------------------------
# Signature codec
# ---------------------------------------------------------------------------


def build_signature_data(payload: dict[str, Any]) -> bytes:
    """
    Canonical bytes for a signed payload.

    Top-level keys are ordered lexicographically and ``signature`` is left
    out; nested values are serialized in the order they were received.
    The encoding is compact JSON (no whitespace) in UTF-8.
    """
    ordered = {key: payload[key] for key in sorted(payload) if key != "signature"}
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign_payload(private_key: Ed25519PrivateKey, payload: dict[str, Any]) -> str:
    """Sign the canonical encoding of ``payload``; returns base64."""
    return base64.b64encode(private_key.sign(build_signature_data(payload))).decode()


def verify_signature(public_key_b64: str, signature_b64: str, data: bytes) -> bool:
    """Check an Ed25519 signature. Malformed keys or signatures count as failures."""
    try:
        identity = InstanceIdentity.from_public_key_base64(public_key_b64)
        signature = base64.b64decode(signature_b64, validate=True)
    except Exception:
        return False
    return identity.verify_signature(data, signature)


def is_valid_public_key(public_key_b64: str) -> bool:
    try:
        InstanceIdentity.from_public_key_base64(public_key_b64)
        return True
    except Exception:
        return False


# ---------------------------------------------------------------------------
# Replay guard
# ---------------------------------------------------------------------------


def now_ms() -> int:
    return int(time.time() * 1000)


def is_timestamp_valid(timestamp: int, now: int | None = None) -> bool:
    """True iff ``timestamp`` (epoch ms) is within five minutes of now, either side."""
    if now is None:
        now = now_ms()
    return abs(now - timestamp) <= TIMESTAMP_WINDOW_MS


# ---------------------------------------------------------------------------
# Derived identifiers
# ---------------------------------------------------------------------------


def instance_id_from_repo(repo_url: str) -> str:
    """Deterministic instance id: SHA-256 hex of the normalized repo URL."""
    return hashlib.sha256(repo_url.strip().lower().encode()).hexdigest()


def hash_ip(ip: str, salt: str) -> str:
    """One-way digest of a network address, for coarse rate limiting only."""
    return hashlib.sha256(f"{ip}{salt}".encode()).hexdigest()


def client_ip(request: Request) -> str:
    """Best-effort caller address, honoring the first ``x-forwarded-for`` hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


# ---------------------------------------------------------------------------
# Admin credential
# ---------------------------------------------------------------------------


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return secrets.compare_digest(a.encode(), b.encode())


def supplied_admin_key(request: Request) -> str | None:
    return request.headers.get(ADMIN_HEADER) or request.query_params.get(ADMIN_QUERY_PARAM)


def is_admin(request: Request) -> bool:
    """Whether the request carries the configured admin key."""
    expected = request.app.state.settings.admin_key
    supplied = supplied_admin_key(request)
    if not expected or not supplied:
        return False
    return constant_time_compare(supplied, expected)


async def require_admin(request: Request) -> None:
    """
    FastAPI dependency: reject unless the admin key is present and correct.

    Missing credential is 403, a wrong one is 401. An empty ``ADMIN_KEY``
    setting disables the admin surface entirely.
    """
    supplied = supplied_admin_key(request)
    if not supplied:
        raise AdminAuthError(missing=True)
    if not is_admin(request):
        logger.warning("admin_key_rejected", path=request.url.path)
        raise AdminAuthError(missing=False)
