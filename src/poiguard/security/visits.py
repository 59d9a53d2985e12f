"""Visit creation for accepted validations."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.db.models import POI, User, Visit, VisitAuditLog
from poiguard.security.gps_scorer import GPSSample
from poiguard.time_utils import utcnow

logger = structlog.get_logger()


class AlreadyVisited(ValueError):
    """The (user, POI) pair already has a Visit."""


@dataclass(frozen=True)
class PoiReward:
    """Detached view of what a POI pays out; survives session rollbacks."""

    poi_id: int
    points: int
    xp_reward: int

    @classmethod
    def of(cls, poi: POI) -> PoiReward:
        return cls(poi_id=poi.id, points=poi.points, xp_reward=poi.xp_reward)


async def has_visited(db: AsyncSession, user_id: int, poi_id: int) -> bool:
    result = await db.execute(
        select(Visit.id).where(Visit.user_id == user_id, Visit.poi_id == poi_id)
    )
    return result.first() is not None


async def record_visit(
    db: AsyncSession,
    user_id: int,
    poi: PoiReward,
    audit: VisitAuditLog,
    sample: GPSSample | None,
) -> Visit:
    """Create the Visit, credit POI points and link it on the audit record.

    Runs inside a SAVEPOINT: the UNIQUE(user_id, poi_id) constraint decides
    concurrent claims, and the loser gets AlreadyVisited. Does not commit.
    """
    visit = Visit(
        user_id=user_id,
        poi_id=poi.poi_id,
        audit_log_id=audit.id,
        points_earned=poi.points,
        xp_earned=poi.xp_reward,
        latitude=sample.latitude if sample else None,
        longitude=sample.longitude if sample else None,
        scanned_at=utcnow(),
    )
    try:
        async with db.begin_nested():
            db.add(visit)
            await db.flush()
            await db.execute(
                update(User)
                .where(User.id == user_id)
                .values(total_points=User.total_points + poi.points)
                .execution_options(synchronize_session=False)
            )
    except IntegrityError as exc:
        logger.info("visit_already_recorded", user_id=user_id, poi_id=poi.poi_id)
        raise AlreadyVisited(f"user {user_id} already visited poi {poi.poi_id}") from exc

    audit.visit_id = visit.id
    logger.info("visit_recorded", user_id=user_id, poi_id=poi.poi_id, visit_id=visit.id, points=poi.points)
    return visit
