"""Single-use visit challenges.

A challenge binds one visit attempt to a short window. Consumption is a single
conditional UPDATE so that, of any number of concurrent callers presenting the
same nonce, exactly one sees a matched row.
"""

from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import get_settings
from poiguard.db.models import VisitChallenge
from poiguard.security.flags import ReasonCode
from poiguard.time_utils import ensure_utc, utcnow

logger = structlog.get_logger()

NONCE_BYTES = 32  # rendered as 64 lowercase hex chars


class ChallengeRejected(ValueError):
    """Raised when a challenge cannot be consumed. `code` is audit-only detail."""

    def __init__(self, code: ReasonCode) -> None:
        super().__init__(code.value)
        self.code = code


async def issue(db: AsyncSession, user_id: int) -> VisitChallenge:
    """Create and persist a fresh challenge for the user."""
    settings = get_settings()
    now = utcnow()
    challenge = VisitChallenge(
        id=str(uuid.uuid4()),
        user_id=user_id,
        nonce=secrets.token_hex(NONCE_BYTES),
        issued_at=now,
        expires_at=now + timedelta(seconds=settings.challenge_ttl_seconds),
    )
    db.add(challenge)
    await db.commit()
    logger.info("challenge_issued", user_id=user_id, challenge_id=challenge.id)
    return challenge


async def consume(db: AsyncSession, challenge_id: str, nonce: str, user_id: int) -> None:
    """Atomically mark the challenge consumed, or raise ChallengeRejected.

    The consumption is committed immediately: a challenge is burned even if a
    later validation stage fails.
    """
    now = utcnow()
    result = await db.execute(
        update(VisitChallenge)
        .where(
            VisitChallenge.id == challenge_id,
            VisitChallenge.user_id == user_id,
            VisitChallenge.nonce == nonce,
            VisitChallenge.consumed_at.is_(None),
            VisitChallenge.expires_at > now,
        )
        .values(consumed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 1:
        return

    code = await _classify_failure(db, challenge_id, nonce, user_id, now)
    logger.info("challenge_rejected", user_id=user_id, challenge_id=challenge_id, code=code.value)
    raise ChallengeRejected(code)


async def _classify_failure(
    db: AsyncSession,
    challenge_id: str,
    nonce: str,
    user_id: int,
    now: datetime,
) -> ReasonCode:
    row = (
        await db.execute(
            select(VisitChallenge)
            .where(VisitChallenge.id == challenge_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()

    # Another user's challenge is indistinguishable from a missing one.
    if row is None or row.user_id != user_id:
        return ReasonCode.CHALLENGE_NOT_FOUND
    if row.consumed_at is not None:
        return ReasonCode.CHALLENGE_ALREADY_USED
    if not secrets.compare_digest(row.nonce.encode(), nonce.encode()):
        return ReasonCode.CHALLENGE_NONCE_MISMATCH
    if ensure_utc(row.expires_at) <= now:
        return ReasonCode.CHALLENGE_EXPIRED
    # Matched on re-read: a concurrent caller won between our UPDATE and SELECT.
    return ReasonCode.CHALLENGE_ALREADY_USED


async def purge_expired(db: AsyncSession, older_than: datetime) -> int:
    """Delete challenges that expired or were consumed before `older_than`."""
    result = await db.execute(
        delete(VisitChallenge).where(
            or_(
                VisitChallenge.expires_at < older_than,
                VisitChallenge.consumed_at < older_than,
            )
        )
    )
    await db.commit()
    return result.rowcount or 0
