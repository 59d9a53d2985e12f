"""Visit validation, rewards, sessions and security metrics endpoints."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.auth.dependencies import get_current_user, get_token_payload, require_admin
from poiguard.database import get_session
from poiguard.db.models import User
from poiguard.security import challenge as challenges
from poiguard.security import reward_guard, session_tracker
from poiguard.security.engine import VisitClaim, validate_visit
from poiguard.security.fingerprint import extract_server_side
from poiguard.security.gps_scorer import GPSSample
from poiguard.security.metrics import security_metrics
from poiguard.security.schemas import (
    AwardRequest,
    AwardResponse,
    ChallengeResponse,
    RevokeRequest,
    RevokeResponse,
    SecurityMetricsResponse,
    SessionEventRequest,
    SessionEventResponse,
    SessionOut,
    SessionsResponse,
    ValidateVisitRequest,
    ValidateVisitResponse,
    VisitOut,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Security"])


def _peer_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ── Visits ──


@router.post("/poi/challenge", response_model=ChallengeResponse)
async def issue_challenge(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Issue a single-use challenge valid for 60 seconds."""
    challenge = await challenges.issue(db, user.id)
    return ChallengeResponse(
        challenge_id=challenge.id,
        nonce=challenge.nonce,
        issued_at=challenge.issued_at,
        expires_at=challenge.expires_at,
    )


@router.post("/poi/validate-visit", response_model=ValidateVisitResponse)
async def validate_visit_endpoint(
    body: ValidateVisitRequest,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Validate a visit claim. 403 on trust rejection, 503 when the caller should retry."""
    claim = VisitClaim(
        user_id=user.id,
        poi_id=body.poi_id,
        tag_uid=body.tag_uid,
        challenge_id=body.challenge_id,
        nonce=body.nonce,
        samples=[GPSSample(**s.model_dump()) for s in body.gps_samples],
        device_info=body.device_info.model_dump(),
        server=extract_server_side(request.headers, _peer_ip(request)),
        client_fingerprint=body.client_fingerprint,
    )
    result = await validate_visit(db, claim)

    response = ValidateVisitResponse(
        is_valid=result.is_valid,
        confidence=result.confidence,
        flags=result.flags,
        reason=result.reason,
        audit_log_id=result.audit_log_id,
        visit=(
            VisitOut(id=result.visit_id, points_earned=result.points_earned, xp_earned=result.xp_earned)
            if result.visit_id is not None
            else None
        ),
    )
    if result.retryable:
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"), headers={"Retry-After": "1"})
    if not result.is_valid:
        return JSONResponse(status_code=403, content=response.model_dump(mode="json"))
    return response


# ── Rewards ──


@router.post("/rewards/award", response_model=AwardResponse)
async def award_reward(
    body: AwardRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Grant XP once per idempotency key."""
    user_id = user.id
    coordinates = (body.coordinates.latitude, body.coordinates.longitude) if body.coordinates else None
    try:
        result = await reward_guard.award(
            db,
            user_id,
            body.action_type,
            body.idempotency_key,
            coordinates=coordinates,
            metadata=body.metadata,
            poi_id=body.poi_id,
        )
    except reward_guard.RateLimited as e:
        raise HTTPException(
            status_code=429,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after)},
        ) from e
    except reward_guard.AwardRejected as e:
        raise HTTPException(status_code=403, detail="Reward could not be granted") from e
    except reward_guard.InvalidAward as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return AwardResponse(
        xp_awarded=result.xp_awarded,
        new_total=result.new_total,
        level=result.level,
        suspicious_score=result.suspicious_score,
        flags=result.flags,
        replayed=result.replayed,
    )


# ── Sessions ──


@router.get("/sessions", response_model=SessionsResponse)
async def list_sessions(
    payload: dict[str, Any] = Depends(get_token_payload),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Active sessions of the current user."""
    current = payload.get("sid")
    rows = await session_tracker.list_active_sessions(db, user.id)
    return SessionsResponse(sessions=[
        SessionOut(
            session_token=row.session_token,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            created_at=row.created_at,
            last_seen_at=row.last_seen_at,
            current=row.session_token == current,
        )
        for row in rows
    ])


@router.post("/sessions/events", response_model=SessionEventResponse)
async def record_session_event(
    body: SessionEventRequest,
    request: Request,
    payload: dict[str, Any] = Depends(get_token_payload),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Record a lifecycle event for the session in the token."""
    sid = payload.get("sid")
    if not sid:
        raise HTTPException(status_code=400, detail="Token carries no session")
    server = extract_server_side(request.headers, _peer_ip(request))
    entry = await session_tracker.log(
        db,
        user.id,
        sid,
        session_tracker.SessionAction(body.action),
        ip=server.ip,
        user_agent=server.user_agent,
        fingerprint=body.device_fingerprint,
        latitude=body.latitude,
        longitude=body.longitude,
    )
    return SessionEventResponse(suspicious=entry.suspicious, flags=list(entry.flags))


@router.post("/sessions/revoke", response_model=RevokeResponse)
async def revoke_sessions(
    body: RevokeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Revoke one of the user's sessions, or all of them."""
    user_id = user.id
    if body.all:
        count = await session_tracker.revoke_all(db, user_id, body.reason)
    else:
        revoked = await session_tracker.revoke(db, body.session_token or "", body.reason, user_id=user_id)
        count = 1 if revoked else 0
    return RevokeResponse(revoked=count)


# ── Admin ──


@router.get("/admin/security/metrics", response_model=SecurityMetricsResponse)
async def get_security_metrics(
    range_: str = Query("24h", alias="range", pattern="^(24h|7d|30d)$"),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Anti-spoofing, session and reward aggregates for the dashboard."""
    return await security_metrics(db, range_)
