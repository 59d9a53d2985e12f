"""Session lifecycle log and anomaly tracking.

`session_logs` is append-only. `user_sessions` is the registry used for
revocation; revocation is a conditional update on `revoked_at IS NULL` so that
repeated calls are harmless and only real transitions are logged.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import get_settings
from poiguard.db.models import SessionLog, UserSession
from poiguard.security.flags import SessionFlag
from poiguard.security.geo import haversine_meters, speed_kmh
from poiguard.time_utils import ensure_utc, utcnow

logger = structlog.get_logger()


class SessionAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    REFRESH = "REFRESH"
    REVOKE = "REVOKE"
    ANOMALY = "ANOMALY"


@dataclass
class SessionRisk:
    suspicious_session_count: int = 0
    last_flags: list[str] = field(default_factory=list)


async def log(
    db: AsyncSession,
    user_id: int,
    session_token: str | None,
    action: SessionAction,
    flags: Iterable[str] = (),
    *,
    ip: str | None = None,
    user_agent: str | None = None,
    fingerprint: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
) -> SessionLog:
    """Append a lifecycle entry. LOGIN also registers the session and runs anomaly checks."""
    now = utcnow()
    all_flags = [str(getattr(f, "value", f)) for f in flags]

    if action == SessionAction.LOGIN:
        detected = await _detect_login_anomalies(db, user_id, session_token, ip, latitude, longitude)
        all_flags.extend(f.value for f in detected if f.value not in all_flags)
        if session_token:
            await _register_session(
                db, user_id, session_token, ip, user_agent, fingerprint, latitude, longitude
            )

    entry = SessionLog(
        user_id=user_id,
        session_token=session_token,
        action=action.value,
        ip_address=ip,
        user_agent=user_agent,
        device_fingerprint=fingerprint,
        suspicious=bool(all_flags),
        flags=all_flags,
        created_at=now,
    )
    db.add(entry)
    await db.commit()

    if entry.suspicious:
        logger.warning("session_anomaly", user_id=user_id, action=action.value, flags=all_flags)
    return entry


async def _register_session(
    db: AsyncSession,
    user_id: int,
    session_token: str,
    ip: str | None,
    user_agent: str | None,
    fingerprint: str | None,
    latitude: float | None,
    longitude: float | None,
) -> None:
    settings = get_settings()
    now = utcnow()
    session = await db.get(UserSession, session_token)
    if session is None:
        db.add(UserSession(
            session_token=session_token,
            user_id=user_id,
            ip_address=ip,
            user_agent=user_agent,
            device_fingerprint=fingerprint,
            latitude=latitude,
            longitude=longitude,
            created_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(days=settings.session_ttl_days),
        ))
        return
    session.last_seen_at = now
    session.ip_address = ip or session.ip_address
    if latitude is not None and longitude is not None:
        session.latitude = latitude
        session.longitude = longitude


async def _detect_login_anomalies(
    db: AsyncSession,
    user_id: int,
    session_token: str | None,
    ip: str | None,
    latitude: float | None,
    longitude: float | None,
) -> list[SessionFlag]:
    settings = get_settings()
    now = utcnow()
    detected: list[SessionFlag] = []

    churn_since = now - timedelta(minutes=settings.session_churn_window_minutes)
    recent_logins = (
        await db.execute(
            select(func.count(SessionLog.id)).where(
                SessionLog.user_id == user_id,
                SessionLog.action == SessionAction.LOGIN.value,
                SessionLog.created_at >= churn_since,
            )
        )
    ).scalar_one()
    if recent_logins + 1 > settings.session_churn_limit:
        detected.append(SessionFlag.RAPID_SESSION_CHURN)

    if latitude is not None and longitude is not None:
        others = (
            await db.execute(
                select(UserSession).where(
                    UserSession.user_id == user_id,
                    UserSession.session_token != (session_token or ""),
                    UserSession.revoked_at.is_(None),
                    UserSession.expires_at > now,
                    UserSession.latitude.is_not(None),
                    UserSession.longitude.is_not(None),
                )
            )
        ).scalars().all()
        for other in others:
            distance = haversine_meters(other.latitude, other.longitude, latitude, longitude)
            if distance <= settings.journey_min_distance_meters:
                continue
            elapsed = (now - ensure_utc(other.last_seen_at)).total_seconds()
            if speed_kmh(distance, elapsed) > settings.max_travel_speed_kmh:
                detected.append(SessionFlag.CONCURRENT_DISTANT_SESSIONS)
                break

    if ip:
        location_since = now - timedelta(minutes=settings.session_location_window_minutes)
        ips = set(
            (
                await db.execute(
                    select(SessionLog.ip_address).where(
                        SessionLog.user_id == user_id,
                        SessionLog.action == SessionAction.LOGIN.value,
                        SessionLog.created_at >= location_since,
                        SessionLog.ip_address.is_not(None),
                    )
                )
            ).scalars().all()
        )
        ips.add(ip)
        if len(ips) >= settings.session_location_limit:
            detected.append(SessionFlag.MULTIPLE_LOCATIONS)

    return detected


async def is_suspicious(db: AsyncSession, user_id: int, window: timedelta) -> SessionRisk:
    """Count suspicious session entries within the window. Read-only."""
    since = utcnow() - window
    count = (
        await db.execute(
            select(func.count(SessionLog.id)).where(
                SessionLog.user_id == user_id,
                SessionLog.suspicious.is_(True),
                SessionLog.created_at >= since,
            )
        )
    ).scalar_one()
    if not count:
        return SessionRisk()

    last = (
        await db.execute(
            select(SessionLog.flags)
            .where(
                SessionLog.user_id == user_id,
                SessionLog.suspicious.is_(True),
                SessionLog.created_at >= since,
            )
            .order_by(SessionLog.created_at.desc(), SessionLog.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return SessionRisk(suspicious_session_count=count, last_flags=list(last or []))


async def revoke(
    db: AsyncSession,
    session_token: str,
    reason: str,
    *,
    user_id: int | None = None,
) -> bool:
    """Revoke one session. Returns False if it was unknown or already revoked."""
    now = utcnow()
    stmt = (
        update(UserSession)
        .where(UserSession.session_token == session_token, UserSession.revoked_at.is_(None))
        .values(revoked_at=now, revoke_reason=reason)
        .execution_options(synchronize_session=False)
    )
    if user_id is not None:
        stmt = stmt.where(UserSession.user_id == user_id)
    result = await db.execute(stmt)
    if result.rowcount != 1:
        await db.commit()
        return False

    owner = (
        await db.execute(select(UserSession.user_id).where(UserSession.session_token == session_token))
    ).scalar_one()
    db.add(SessionLog(
        user_id=owner,
        session_token=session_token,
        action=SessionAction.REVOKE.value,
        suspicious=False,
        flags=[],
        created_at=now,
    ))
    await db.commit()
    logger.info("session_revoked", user_id=owner, reason=reason)
    return True


async def revoke_all(
    db: AsyncSession,
    user_id: int,
    reason: str,
    *,
    except_token: str | None = None,
) -> int:
    """Revoke every active session of a user. Returns how many were actually revoked."""
    now = utcnow()
    query = select(UserSession.session_token).where(
        UserSession.user_id == user_id,
        UserSession.revoked_at.is_(None),
    )
    if except_token:
        query = query.where(UserSession.session_token != except_token)
    tokens = (await db.execute(query)).scalars().all()

    revoked = 0
    for token in tokens:
        result = await db.execute(
            update(UserSession)
            .where(UserSession.session_token == token, UserSession.revoked_at.is_(None))
            .values(revoked_at=now, revoke_reason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            revoked += 1
            db.add(SessionLog(
                user_id=user_id,
                session_token=token,
                action=SessionAction.REVOKE.value,
                suspicious=False,
                flags=[],
                created_at=now,
            ))
    await db.commit()
    if revoked:
        logger.info("sessions_revoked", user_id=user_id, count=revoked, reason=reason)
    return revoked


async def list_active_sessions(db: AsyncSession, user_id: int) -> list[UserSession]:
    now = utcnow()
    result = await db.execute(
        select(UserSession)
        .where(
            UserSession.user_id == user_id,
            UserSession.revoked_at.is_(None),
            UserSession.expires_at > now,
        )
        .order_by(UserSession.last_seen_at.desc())
    )
    return list(result.scalars().all())


async def is_revoked(db: AsyncSession, session_token: str) -> bool:
    """True only for registered sessions that have been revoked."""
    revoked_at = (
        await db.execute(
            select(UserSession.revoked_at).where(UserSession.session_token == session_token)
        )
    ).scalar_one_or_none()
    return revoked_at is not None
