"""
HS256 JWT access tokens.

Tokens are minted by the identity provider; this service only verifies them.
`create_access_token` exists for local tooling and tests. The `sid` claim
carries the session token so revoked sessions can be refused.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from poiguard.config import get_settings


def create_access_token(
    user_id: int,
    *,
    role: str = "user",
    session_token: str | None = None,
    expires_minutes: int | None = None,
) -> str:
    """
    Create a short-lived access token.

    Args:
        user_id: The user's database ID.
        role: "user" or "admin".
        session_token: Session identifier placed in the `sid` claim.
        expires_minutes: Override for the configured lifetime.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else settings.jwt_access_token_expire_minutes
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
        "iss": settings.jwt_issuer,
        "type": "access",
    }
    if session_token:
        payload["sid"] = session_token
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode an access token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or not an access token.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != "access":
        msg = f"Expected token type 'access', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)
    return payload
