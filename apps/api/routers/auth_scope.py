"""Authentication dependencies for tenant and role scoping."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    tenant_id: str
    role: str
    email: Optional[str] = None


def auth_context_from_token(token: str) -> AuthContext:
    """Decode a raw session token; raises ValueError when it is not valid."""
    payload = decode_session_token(token)
    return AuthContext(
        user_id=str(payload.get("sub", "")),
        tenant_id=str(payload.get("tenant_id", "")),
        role=str(payload.get("role", "viewer")),
        email=str(payload.get("email", "")) or None,
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
    token: Optional[str] = Query(default=None),
) -> AuthContext:
    """Resolve the caller from a Bearer header, falling back to a `token` query parameter."""
    if credentials and credentials.scheme.lower() == "bearer":
        raw_token = credentials.credentials
    else:
        raw_token = token
    if not raw_token:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        return auth_context_from_token(raw_token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def require_role(*allowed_roles: str) -> Callable:
    """Return a dependency that admits only callers holding one of `allowed_roles`."""

    async def _dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in allowed_roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return auth

    return _dependency


def ensure_tenant_scope(auth: AuthContext, record_tenant_id: str) -> None:
    """Reject mutations of records owned by another tenant."""
    if record_tenant_id != auth.tenant_id:
        raise HTTPException(status_code=403, detail="Video belongs to another tenant.")
