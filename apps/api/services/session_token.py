"""
Signed session tokens.

A token names the user, the tenant whose videos they may touch and their
role (viewer < editor < admin). Identity is issued elsewhere; this module
only signs and verifies.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "vsp_session"
ROLES = ("viewer", "editor", "admin")


def create_session_token(
    user_id: str,
    tenant_id: str,
    role: str = "viewer",
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a token for `user_id` in `tenant_id`; returns the token and its expiry epoch."""
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")
    if not tenant_id:
        raise ValueError("A session needs a tenant.")

    issued = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued + lifetime).timestamp())

    claims: Dict[str, Any] = {
        "type": SESSION_TOKEN_TYPE,
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "iat": int(issued.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def _claim(payload: Dict[str, Any], name: str) -> str:
    value = str(payload.get(name) or "").strip()
    if not value:
        raise ValueError(f"Session token missing {name}.")
    return value


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry and required claims; raises ValueError on any defect."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    _claim(payload, "sub")
    _claim(payload, "tenant_id")
    if _claim(payload, "role") not in ROLES:
        raise ValueError("Session token has an unknown role.")
    return payload
