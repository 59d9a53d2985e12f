"""Read-only security aggregates for the operator dashboard."""

from __future__ import annotations

from collections import Counter
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import get_settings
from poiguard.db.models import GamificationLog, SessionLog, UserSession, VisitAuditLog
from poiguard.security.flags import ReasonCode
from poiguard.time_utils import range_start, utcnow

TOP_FLAGS_LIMIT = 10

# Audits written for storage or code failures say nothing about the claim.
FAILURE_REASONS = (ReasonCode.INFRASTRUCTURE_ERROR.value, ReasonCode.INTERNAL_ERROR.value)


async def security_metrics(db: AsyncSession, range_key: str = "24h") -> dict[str, Any]:
    settings = get_settings()
    now = utcnow()
    since = range_start(range_key, now)

    assessed = or_(VisitAuditLog.reason_code.is_(None), VisitAuditLog.reason_code.notin_(FAILURE_REASONS))

    total_visits = await _scalar(
        db, select(func.count(VisitAuditLog.id)).where(VisitAuditLog.created_at >= since)
    )
    spoofing_attempts = await _scalar(
        db,
        select(func.count(VisitAuditLog.id)).where(
            VisitAuditLog.created_at >= since,
            VisitAuditLog.confidence < settings.min_confidence,
            assessed,
        ),
    )
    avg_confidence = await _scalar(
        db, select(func.avg(VisitAuditLog.confidence)).where(VisitAuditLog.created_at >= since, assessed)
    )

    flag_rows = (
        await db.execute(select(VisitAuditLog.flags).where(VisitAuditLog.created_at >= since, assessed))
    ).scalars().all()
    counter: Counter[str] = Counter()
    for flags in flag_rows:
        counter.update(flags or [])

    active_sessions = await _scalar(
        db,
        select(func.count(UserSession.session_token)).where(
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > now,
        ),
    )
    suspicious_sessions = await _scalar(
        db,
        select(func.count(SessionLog.id)).where(
            SessionLog.created_at >= since,
            SessionLog.suspicious.is_(True),
        ),
    )
    revoked_sessions = await _scalar(
        db,
        select(func.count(SessionLog.id)).where(
            SessionLog.created_at >= since,
            SessionLog.action == "REVOKE",
        ),
    )

    xp_awarded = await _scalar(
        db,
        select(func.coalesce(func.sum(GamificationLog.xp_awarded), 0)).where(
            GamificationLog.created_at >= since,
            GamificationLog.granted.is_(True),
        ),
    )
    cheating_attempts = await _scalar(
        db,
        select(func.count(GamificationLog.id)).where(
            GamificationLog.created_at >= since,
            GamificationLog.suspicious_score >= settings.suspicious_flag_threshold,
        ),
    )
    blocked_actions = await _scalar(
        db,
        select(func.count(GamificationLog.id)).where(
            GamificationLog.created_at >= since,
            GamificationLog.granted.is_(False),
        ),
    )

    return {
        "range": range_key,
        "total_visits": int(total_visits or 0),
        "spoofing_attempts": int(spoofing_attempts or 0),
        "avg_confidence_score": round(float(avg_confidence), 1) if avg_confidence is not None else 0.0,
        "top_flags": [
            {"flag": flag, "count": count} for flag, count in counter.most_common(TOP_FLAGS_LIMIT)
        ],
        "active_sessions": int(active_sessions or 0),
        "suspicious_sessions": int(suspicious_sessions or 0),
        "revoked_sessions": int(revoked_sessions or 0),
        "xp_awarded": int(xp_awarded or 0),
        "cheating_attempts": int(cheating_attempts or 0),
        "blocked_actions": int(blocked_actions or 0),
    }


async def _scalar(db: AsyncSession, stmt: Any) -> Any:
    return (await db.execute(stmt)).scalar()
