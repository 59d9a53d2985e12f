"""Progress endpoint: XP, level and unlocked badges."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.auth.dependencies import get_current_user
from poiguard.database import get_session
from poiguard.db.models import POI, BadgeDefinition, User, Visit
from poiguard.gamification.badge_rules import UserProgress, evaluate, parse_rule
from poiguard.gamification.levels import level_info
from poiguard.security.reward_guard import get_progress
from poiguard.security.schemas import BadgeOut, ProgressResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


@router.get("/me/progress", response_model=ProgressResponse)
async def my_progress(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Level progress and badges unlocked by the current user."""
    xp = await get_progress(db, user.id)
    info = level_info(xp["total_xp"])

    category_rows = await db.execute(
        select(POI.category, func.count(Visit.id))
        .join(POI, POI.id == Visit.poi_id)
        .where(Visit.user_id == user.id)
        .group_by(POI.category)
    )
    category_visits = {cat or "uncategorized": count for cat, count in category_rows.all()}

    progress = UserProgress(
        visit_count=sum(category_visits.values()),
        category_visits=category_visits,
        total_points=user.total_points,
        level=info["level"],
    )

    result = await db.execute(
        select(BadgeDefinition)
        .where(BadgeDefinition.is_active.is_(True))
        .order_by(BadgeDefinition.id)
    )
    badges: list[BadgeOut] = []
    for badge in result.scalars():
        try:
            rule = parse_rule(badge.requirement)
        except ValueError:
            logger.warning("badge_requirement_invalid", slug=badge.slug)
            continue
        if evaluate(rule, progress):
            badges.append(BadgeOut(slug=badge.slug, name=badge.name))

    return ProgressResponse(
        total_xp=xp["total_xp"],
        level=info["level"],
        xp_into_level=info["xp_into_level"],
        xp_for_level=info["xp_for_level"],
        next_level=info["next_level"],
        total_points=user.total_points,
        visits=progress.visit_count,
        badges=badges,
    )
