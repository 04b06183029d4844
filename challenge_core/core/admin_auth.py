"""
Operator authentication for audit, backfill and manual-completion actions.

The operator presents the shared key in the X-Admin-Key header. Identity
beyond that (user login, roles) belongs to the external auth provider.

Security guarantees:
- Missing or wrong key is rejected before any read or write happens.
- Actor identity carries only a key hash, never the key itself.
"""
import os
import hashlib
import hmac
from typing import Optional, Literal
from dataclasses import dataclass
from fastapi import Request

from challenge_core.core.errors import AuthorizationError
from challenge_core.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated operator."""
    actor_type: Literal["operator_key", "system_job"]
    actor_id: str  # "key:<hash>" or a job name
    actor_display: Optional[str] = None
    is_operator: bool = True


SYSTEM_JOB_ACTOR = AdminActor(actor_type="system_job", actor_id="system_job", actor_display="Scheduled audit")


def get_admin_api_key() -> Optional[str]:
    """Get the operator key.
    Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY.
    """
    env_key = os.getenv("ADMIN_API_KEY")
    if env_key:
        return env_key
    return settings.ADMIN_KEY


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    """Return the operator identity for a request, or None (does not raise)."""
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(
        actor_type="operator_key",
        actor_id=f"key:{key_hash}",
        actor_display="Operator Key",
    )


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require operator authentication.

    Usage:
        @router.post("/v1/admin/...")
        def endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = get_admin_actor(request)
    if actor:
        return actor

    if not get_admin_api_key():
        raise AuthorizationError(
            "Operator authentication not configured (set ADMIN_KEY)",
            code="admin_auth_unconfigured",
            status_code=503,
        )
    if not request.headers.get("X-Admin-Key"):
        raise AuthorizationError("Missing operator credentials", code="admin_unauthorized", status_code=401)
    raise AuthorizationError("Operator access required")


def ensure_operator(actor: Optional[AdminActor]) -> AdminActor:
    """Service-level guard for callers that bypass the HTTP dependency."""
    if actor is None or not actor.is_operator:
        raise AuthorizationError("Operator access required")
    return actor
