"""Anti-cheat guard for reward issuance.

Awards are exactly-once per idempotency key. The key is enforced by a UNIQUE
constraint on the ledger: the row is inserted inside a SAVEPOINT and a conflict
resolves to the stored result, so concurrent duplicates cannot double-credit.

Suspicion scoring:
- impossible journey since the previous award with coordinates
- machine-regular timing between awards
- strikes from earlier suspicious attempts (24h)

A high score records a strike, a very high score (or too many strikes) sets a
temporary ban at the rate-limit layer, and scores above the reject threshold
are recorded as denied without crediting anything.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import Settings, get_settings
from poiguard.db.models import POI, GamificationLog, UserGamification, Visit
from poiguard.gamification.levels import compute_level
from poiguard.security import rate_limit
from poiguard.security.flags import REWARD_PENALTIES, RewardFlag
from poiguard.security.geo import haversine_meters, speed_kmh
from poiguard.time_utils import ensure_utc, utcnow

logger = structlog.get_logger()

STRIKE_PENALTY = 10
HIGH_SPEED_RATIO = 0.7
TIMING_MIN_ENTRIES = 5
TIMING_HISTORY = 10
TIMING_MIN_MEAN_SECONDS = 1.0
TIMING_MAX_CV = 0.1


class ActionType(str, Enum):
    VISIT_POI = "VISIT_POI"
    COMPLETE_ROUTE = "COMPLETE_ROUTE"
    DAILY_STREAK = "DAILY_STREAK"
    SHARE_CONTENT = "SHARE_CONTENT"
    RATE_POI = "RATE_POI"


# VISIT_POI pays the POI's own xp_reward.
ACTION_XP: dict[ActionType, int] = {
    ActionType.COMPLETE_ROUTE: 50,
    ActionType.DAILY_STREAK: 15,
    ActionType.SHARE_CONTENT: 5,
    ActionType.RATE_POI: 3,
}


@dataclass
class AwardResult:
    xp_awarded: int
    new_total: int
    level: int
    suspicious_score: int = 0
    flags: list[str] = field(default_factory=list)
    replayed: bool = False


class InvalidAward(ValueError):
    """Malformed award request (missing POI, unknown action)."""


class AwardRejected(PermissionError):
    """The award was refused; nothing was credited."""

    def __init__(self, message: str, *, suspicious_score: int = 0, flags: list[str] | None = None) -> None:
        super().__init__(message)
        self.suspicious_score = suspicious_score
        self.flags = flags or []


class RateLimited(PermissionError):
    """Too many attempts or a temporary ban. Retryable after `retry_after` seconds."""

    def __init__(self, retry_after: int, *, banned: bool = False) -> None:
        super().__init__("Temporarily banned" if banned else "Too many reward attempts")
        self.retry_after = retry_after
        self.banned = banned


async def award(
    db: AsyncSession,
    user_id: int,
    action_type: ActionType | str,
    idempotency_key: str,
    coordinates: tuple[float, float] | None = None,
    metadata: dict[str, Any] | None = None,
    poi_id: int | None = None,
) -> AwardResult:
    """Grant XP for an action at most once per idempotency key."""
    settings = get_settings()
    try:
        action = ActionType(action_type)
    except ValueError as exc:
        msg = f"Unknown action type: {action_type}"
        raise InvalidAward(msg) from exc

    # 1. Replay
    replay = await _replay(db, user_id, idempotency_key)
    if replay is not None:
        return replay

    # 2-3. Ban and sliding window (both fail open)
    ban_left = await rate_limit.active_ban(user_id)
    if ban_left:
        raise RateLimited(ban_left, banned=True)
    limiter = rate_limit.SlidingWindowLimiter(
        "award", settings.award_rate_limit, settings.award_rate_window_seconds
    )
    decision = await limiter.hit(str(user_id))
    if not decision.allowed:
        logger.info("award_rate_limited", user_id=user_id, retry_after=decision.retry_after)
        raise RateLimited(decision.retry_after)

    # 4. XP
    xp, visit_id, visit_coords = await _resolve_xp(db, user_id, action, poi_id)
    if coordinates is None:
        coordinates = visit_coords

    # 5-7. Suspicion
    now = utcnow()
    flags: list[RewardFlag] = []
    flags.extend(await _journey_flags(db, user_id, coordinates, now, settings))
    if await _regular_timing(db, user_id, now):
        flags.append(RewardFlag.REGULAR_TIMING_PATTERN)
    score = sum(REWARD_PENALTIES.get(f, 0) for f in flags)

    strikes = await rate_limit.strike_count(user_id)
    if strikes:
        flags.append(RewardFlag.REPEAT_OFFENDER)
        score += STRIKE_PENALTY * strikes
    score = min(100, score)
    flag_values = [f.value for f in flags]

    if score >= settings.suspicious_flag_threshold:
        total_strikes = await rate_limit.add_strike(user_id, settings.strike_ttl_seconds)
        if score >= settings.ban_score_threshold or total_strikes >= settings.max_strikes:
            await rate_limit.set_ban(user_id, settings.ban_duration_seconds, reason=",".join(flag_values))

    entry = GamificationLog(
        idempotency_key=idempotency_key,
        user_id=user_id,
        action_type=action.value,
        poi_id=poi_id,
        suspicious_score=score,
        flags=flag_values,
        latitude=coordinates[0] if coordinates else None,
        longitude=coordinates[1] if coordinates else None,
        action_metadata={**(metadata or {}), **({"visit_id": visit_id} if visit_id else {})},
        created_at=now,
    )

    # 8. Deny
    if score >= settings.award_reject_threshold:
        entry.granted = False
        entry.xp_awarded = 0
        entry.total_after = await _current_total(db, user_id)
        if not await _insert_entry(db, entry):
            return await _resolve_conflict(db, user_id, idempotency_key)
        await db.commit()
        logger.warning("award_rejected", user_id=user_id, action=action.value, score=score, flags=flag_values)
        raise AwardRejected("Reward could not be granted", suspicious_score=score, flags=flag_values)

    # 9. Grant
    entry.granted = True
    entry.xp_awarded = xp
    entry.visit_id = visit_id
    await _ensure_gamification_row(db, user_id)
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
            new_total = await _credit(db, user_id, xp, now)
            entry.total_after = new_total
            await db.flush()
    except IntegrityError:
        return await _resolve_conflict(db, user_id, idempotency_key)
    await db.commit()

    level = compute_level(new_total)
    logger.info(
        "award_granted",
        user_id=user_id,
        action=action.value,
        xp=xp,
        new_total=new_total,
        level=level,
        score=score,
        flags=flag_values,
    )
    return AwardResult(
        xp_awarded=xp,
        new_total=new_total,
        level=level,
        suspicious_score=score,
        flags=flag_values,
    )


async def _find_entry(db: AsyncSession, idempotency_key: str) -> GamificationLog | None:
    result = await db.execute(
        select(GamificationLog)
        .where(GamificationLog.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _stored_result(entry: GamificationLog) -> AwardResult:
    if not entry.granted:
        raise AwardRejected(
            "Reward could not be granted",
            suspicious_score=entry.suspicious_score,
            flags=list(entry.flags or []),
        )
    return AwardResult(
        xp_awarded=entry.xp_awarded,
        new_total=entry.total_after,
        level=compute_level(entry.total_after),
        suspicious_score=entry.suspicious_score,
        flags=list(entry.flags or []),
        replayed=True,
    )


async def _replay(db: AsyncSession, user_id: int, idempotency_key: str) -> AwardResult | None:
    entry = await _find_entry(db, idempotency_key)
    if entry is None:
        return None
    if entry.user_id != user_id:
        logger.warning("idempotency_key_reused", user_id=user_id, owner_id=entry.user_id)
        raise AwardRejected("Idempotency key already used")
    logger.info("award_replayed", user_id=user_id, granted=entry.granted)
    return _stored_result(entry)


async def _resolve_conflict(db: AsyncSession, user_id: int, idempotency_key: str) -> AwardResult:
    """After a unique violation: the key won a race, or the visit was already rewarded."""
    replay = await _replay(db, user_id, idempotency_key)
    if replay is not None:
        return replay
    await db.rollback()
    logger.info("visit_already_rewarded", user_id=user_id)
    raise AwardRejected("Visit already rewarded")


async def _insert_entry(db: AsyncSession, entry: GamificationLog) -> bool:
    try:
        async with db.begin_nested():
            db.add(entry)
            await db.flush()
    except IntegrityError:
        return False
    return True


async def _resolve_xp(
    db: AsyncSession,
    user_id: int,
    action: ActionType,
    poi_id: int | None,
) -> tuple[int, int | None, tuple[float, float] | None]:
    """XP for the action, plus the visit id and location for VISIT_POI."""
    if action != ActionType.VISIT_POI:
        return ACTION_XP[action], None, None

    if poi_id is None:
        msg = "poi_id is required for VISIT_POI"
        raise InvalidAward(msg)
    poi = await db.get(POI, poi_id)
    if poi is None:
        msg = f"Unknown POI {poi_id}"
        raise InvalidAward(msg)
    visit = (
        await db.execute(select(Visit).where(Visit.user_id == user_id, Visit.poi_id == poi_id))
    ).scalar_one_or_none()
    if visit is None:
        raise AwardRejected("No accepted visit for this POI")

    coords = None
    if visit.latitude is not None and visit.longitude is not None:
        coords = (visit.latitude, visit.longitude)
    return poi.xp_reward, visit.id, coords


async def _journey_flags(
    db: AsyncSession,
    user_id: int,
    coordinates: tuple[float, float] | None,
    now: datetime,
    settings: Settings,
) -> list[RewardFlag]:
    if coordinates is None:
        return []
    previous = (
        await db.execute(
            select(GamificationLog)
            .where(
                GamificationLog.user_id == user_id,
                GamificationLog.granted.is_(True),
                GamificationLog.latitude.is_not(None),
                GamificationLog.longitude.is_not(None),
            )
            .order_by(GamificationLog.created_at.desc(), GamificationLog.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if previous is None:
        return []

    distance = haversine_meters(previous.latitude, previous.longitude, coordinates[0], coordinates[1])
    if distance <= settings.journey_min_distance_meters:
        return []
    elapsed = (now - ensure_utc(previous.created_at)).total_seconds()
    speed = speed_kmh(distance, elapsed)
    if speed > settings.max_travel_speed_kmh:
        logger.warning("impossible_journey", user_id=user_id, distance_m=round(distance), speed_kmh=speed)
        return [RewardFlag.IMPOSSIBLE_JOURNEY]
    if speed > settings.max_travel_speed_kmh * HIGH_SPEED_RATIO:
        return [RewardFlag.HIGH_TRAVEL_SPEED]
    return []


async def _regular_timing(db: AsyncSession, user_id: int, now: datetime) -> bool:
    """Near-constant intervals between awards look scripted."""
    rows = (
        await db.execute(
            select(GamificationLog.created_at)
            .where(GamificationLog.user_id == user_id)
            .order_by(GamificationLog.created_at.desc())
            .limit(TIMING_HISTORY)
        )
    ).scalars().all()
    if len(rows) < TIMING_MIN_ENTRIES:
        return False

    stamps = sorted(ensure_utc(ts) for ts in rows) + [now]
    intervals = [(b - a).total_seconds() for a, b in zip(stamps, stamps[1:])]
    mean = statistics.fmean(intervals)
    if mean < TIMING_MIN_MEAN_SECONDS:
        return False
    return statistics.pstdev(intervals) / mean < TIMING_MAX_CV


async def _ensure_gamification_row(db: AsyncSession, user_id: int) -> None:
    if await db.get(UserGamification, user_id) is not None:
        return
    try:
        async with db.begin_nested():
            db.add(UserGamification(user_id=user_id, total_xp=0, level=1, updated_at=utcnow()))
            await db.flush()
    except IntegrityError:
        # Created concurrently.
        pass


async def _credit(db: AsyncSession, user_id: int, xp: int, now: datetime) -> int:
    """Atomically add XP and refresh the level. Returns the new total."""
    await db.execute(
        update(UserGamification)
        .where(UserGamification.user_id == user_id)
        .values(total_xp=UserGamification.total_xp + xp, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    new_total = (
        await db.execute(select(UserGamification.total_xp).where(UserGamification.user_id == user_id))
    ).scalar_one()
    await db.execute(
        update(UserGamification)
        .where(UserGamification.user_id == user_id)
        .values(level=compute_level(new_total))
        .execution_options(synchronize_session=False)
    )
    return int(new_total)


async def _current_total(db: AsyncSession, user_id: int) -> int:
    total = (
        await db.execute(select(UserGamification.total_xp).where(UserGamification.user_id == user_id))
    ).scalar_one_or_none()
    return int(total or 0)


async def get_progress(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Total XP and level for the progress endpoint."""
    total = await _current_total(db, user_id)
    return {"total_xp": total, "level": compute_level(total)}
