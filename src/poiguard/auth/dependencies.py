"""FastAPI authentication dependencies."""

from __future__ import annotations

from typing import Any

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.auth.jwt import verify_token
from poiguard.database import get_session
from poiguard.db.models import User
from poiguard.security.session_tracker import is_revoked

_bearer = HTTPBearer()


async def get_token_payload(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Verify the bearer token and refuse sessions that have been revoked."""
    try:
        payload = verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    sid = payload.get("sid")
    if sid and await is_revoked(db, sid):
        raise HTTPException(status_code=401, detail="Session has been revoked")
    return payload


async def get_current_user(
    payload: dict[str, Any] = Depends(get_token_payload),
    db: AsyncSession = Depends(get_session),
) -> User:
    """
    Return the authenticated User.

    Raises 401 if the user is unknown, 403 if banned.
    """
    user = await db.get(User, int(payload["sub"]))
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if user.is_banned:
        raise HTTPException(status_code=403, detail="Account is banned")
    return user


async def require_admin(
    payload: dict[str, Any] = Depends(get_token_payload),
    user: User = Depends(get_current_user),
) -> User:
    """Same as get_current_user but additionally requires role='admin'."""
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
