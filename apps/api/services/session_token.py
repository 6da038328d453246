"""Signed bearer tokens for account holders and internal service identities."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.capabilities import ROLE_CAPABILITIES


SESSION_TOKEN_TYPE = "clc_session"
SERVICE_TOKEN_TYPE = "clc_service"
TOKEN_TYPES = (SESSION_TOKEN_TYPE, SERVICE_TOKEN_TYPE)


def _sign(claims: Dict[str, Any], expires_hours: Optional[int]) -> Dict[str, Any]:
    issued_at = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = issued_at + timedelta(hours=ttl_hours)
    claims = {**claims, "iat": int(issued_at.timestamp()), "exp": int(expires_at.timestamp())}
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
        "role": claims["role"],
    }


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    role: str = "user",
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Token for an account holder; ``sub`` is the wallet owner."""
    if role not in ROLE_CAPABILITIES:
        raise ValueError(f"Unknown role '{role}'.")
    claims: Dict[str, Any] = {"sub": user_id, "type": SESSION_TOKEN_TYPE, "role": role}
    if email:
        claims["email"] = email
    return _sign(claims, expires_hours)


def create_service_token(service_name: str, role: str = "payments", expires_hours: Optional[int] = None) -> Dict[str, Any]:
    """Token for a backend caller such as the payment processor bridge."""
    if role not in ROLE_CAPABILITIES:
        raise ValueError(f"Unknown role '{role}'.")
    return _sign({"sub": f"service:{service_name}", "type": SERVICE_TOKEN_TYPE, "role": role}, expires_hours)


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry, then normalise the claims the API relies on."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() not in TOKEN_TYPES:
        raise ValueError("Invalid session token type.")

    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    role = str(payload.get("role") or "user")
    if role not in ROLE_CAPABILITIES:
        raise ValueError(f"Session token carries unknown role '{role}'.")

    return {**payload, "sub": subject, "role": role}
