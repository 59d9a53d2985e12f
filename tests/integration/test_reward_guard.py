"""Reward issuance: idempotency, suspicion scoring, strikes and bans."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from conftest import POI_LAT, POI_LON, offset
from sqlalchemy import func, select

from poiguard.database import get_session_factory
from poiguard.db.models import GamificationLog, UserGamification, Visit
from poiguard.security import reward_guard
from poiguard.security.reward_guard import ActionType, AwardRejected, InvalidAward, RateLimited
from poiguard.time_utils import utcnow


@pytest_asyncio.fixture
async def user_id(db_session, make_user, fake_redis) -> int:
    user = await make_user()
    return user.id


async def _ledger_rows(db, user_id: int) -> list[GamificationLog]:
    result = await db.execute(
        select(GamificationLog)
        .where(GamificationLog.user_id == user_id)
        .order_by(GamificationLog.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _seed_entry(db, user_id: int, key: str, *, seconds_ago: float, coords=None) -> None:
    """A past granted ledger entry."""
    db.add(GamificationLog(
        idempotency_key=key,
        user_id=user_id,
        action_type=ActionType.SHARE_CONTENT.value,
        granted=True,
        xp_awarded=5,
        total_after=0,
        suspicious_score=0,
        flags=[],
        latitude=coords[0] if coords else None,
        longitude=coords[1] if coords else None,
        action_metadata={},
        created_at=utcnow() - timedelta(seconds=seconds_ago),
    ))
    await db.commit()


async def _seed_visit(db, user_id: int, poi_id: int) -> int:
    visit = Visit(
        user_id=user_id,
        poi_id=poi_id,
        audit_log_id="00000000-0000-0000-0000-000000000000",
        points_earned=10,
        xp_earned=25,
        latitude=POI_LAT,
        longitude=POI_LON,
        scanned_at=utcnow(),
    )
    db.add(visit)
    await db.commit()
    return visit.id


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_key_twice_credits_once(self, db_session, user_id):
        first = await reward_guard.award(db_session, user_id, ActionType.DAILY_STREAK, "streak-2026-10-19")
        second = await reward_guard.award(db_session, user_id, ActionType.DAILY_STREAK, "streak-2026-10-19")

        assert (first.xp_awarded, first.new_total) == (15, 15)
        assert (second.xp_awarded, second.new_total) == (first.xp_awarded, first.new_total)
        assert not first.replayed
        assert second.replayed
        assert len(await _ledger_rows(db_session, user_id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_same_key_credits_once(self, db_session, user_id):
        async def attempt():
            async with get_session_factory()() as session:
                return await reward_guard.award(session, user_id, ActionType.DAILY_STREAK, "streak-race-0001")

        results = await asyncio.gather(*(attempt() for _ in range(5)))

        assert {(r.xp_awarded, r.new_total) for r in results} == {(15, 15)}
        assert sum(not r.replayed for r in results) == 1
        assert len(await _ledger_rows(db_session, user_id)) == 1
        totals = await db_session.execute(
            select(UserGamification.total_xp).where(UserGamification.user_id == user_id)
        )
        assert totals.scalar_one() == 15

        total = (
            await db_session.execute(select(UserGamification.total_xp).where(UserGamification.user_id == user_id))
        ).scalar_one()
        assert total == 15

    @pytest.mark.asyncio
    async def test_key_owned_by_another_user(self, db_session, user_id, make_user):
        other = await make_user("other")
        await reward_guard.award(db_session, user_id, ActionType.RATE_POI, "shared-key-0001")

        with pytest.raises(AwardRejected):
            await reward_guard.award(db_session, other.id, ActionType.RATE_POI, "shared-key-0001")

    @pytest.mark.asyncio
    async def test_replay_does_not_count_against_rate_limit(self, db_session, user_id, fake_redis):
        for _ in range(15):
            await reward_guard.award(db_session, user_id, ActionType.RATE_POI, "rate-poi-key-1")
        assert await fake_redis.zcard(f"award:{user_id}") == 1


class TestXpResolution:
    @pytest.mark.asyncio
    async def test_fixed_action_xp(self, db_session, user_id):
        result = await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0001")
        assert result.xp_awarded == 50
        assert result.level == 1

    @pytest.mark.asyncio
    async def test_level_updates_with_total(self, db_session, user_id):
        await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0001")
        result = await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0002")

        assert result.new_total == 100
        assert result.level == 2
        assert await reward_guard.get_progress(db_session, user_id) == {"total_xp": 100, "level": 2}
        row = await db_session.get(UserGamification, user_id, populate_existing=True)
        assert row.level == 2

    @pytest.mark.asyncio
    async def test_unknown_action_type(self, db_session, user_id):
        with pytest.raises(InvalidAward):
            await reward_guard.award(db_session, user_id, "CLAIM_BONUS", "unknown-action-1")

    @pytest.mark.asyncio
    async def test_visit_poi_requires_poi_id(self, db_session, user_id):
        with pytest.raises(InvalidAward):
            await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, "visit-key-0001")

    @pytest.mark.asyncio
    async def test_visit_poi_unknown_poi(self, db_session, user_id):
        with pytest.raises(InvalidAward):
            await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, "visit-key-0001", poi_id=999)

    @pytest.mark.asyncio
    async def test_visit_poi_without_accepted_visit(self, db_session, user_id, make_poi):
        poi = await make_poi()
        with pytest.raises(AwardRejected):
            await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, "visit-key-0001", poi_id=poi.id)
        assert await _ledger_rows(db_session, user_id) == []

    @pytest.mark.asyncio
    async def test_visit_poi_pays_poi_xp(self, db_session, user_id, make_poi):
        poi = await make_poi(xp_reward=25)
        poi_id = poi.id
        visit_id = await _seed_visit(db_session, user_id, poi_id)

        result = await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, f"visit-{visit_id}", poi_id=poi_id)

        assert result.xp_awarded == 25
        (entry,) = await _ledger_rows(db_session, user_id)
        assert entry.visit_id == visit_id
        assert entry.latitude == POI_LAT

    @pytest.mark.asyncio
    async def test_visit_rewarded_only_once_across_keys(self, db_session, user_id, make_poi):
        poi = await make_poi(xp_reward=25)
        poi_id = poi.id
        visit_id = await _seed_visit(db_session, user_id, poi_id)

        await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, "visit-key-first", poi_id=poi_id)
        with pytest.raises(AwardRejected, match="already rewarded"):
            await reward_guard.award(db_session, user_id, ActionType.VISIT_POI, "visit-key-second", poi_id=poi_id)

        rows = await _ledger_rows(db_session, user_id)
        assert [r.visit_id for r in rows] == [visit_id]
        assert await reward_guard.get_progress(db_session, user_id) == {"total_xp": 25, "level": 1}


class TestJourney:
    @pytest.mark.asyncio
    async def test_impossible_journey_is_flagged_and_struck(self, db_session, user_id, fake_redis):
        await _seed_entry(db_session, user_id, "seed-journey-1", seconds_ago=60, coords=(POI_LAT, POI_LON))
        far = offset(POI_LAT, POI_LON, north_m=50_000)

        result = await reward_guard.award(
            db_session, user_id, ActionType.SHARE_CONTENT, "share-key-0001", coordinates=far
        )

        assert result.flags == ["IMPOSSIBLE_JOURNEY"]
        assert result.suspicious_score == 60
        assert result.xp_awarded == 5
        assert await fake_redis.get(f"cheat:strikes:{user_id}") == "1"
        assert await fake_redis.exists(f"ban:{user_id}") == 0

    @pytest.mark.asyncio
    async def test_high_travel_speed(self, db_session, user_id, fake_redis):
        """1.5 km in a minute is 90 km/h: plausible by car, worth a note."""
        await _seed_entry(db_session, user_id, "seed-journey-1", seconds_ago=60, coords=(POI_LAT, POI_LON))
        nearby = offset(POI_LAT, POI_LON, north_m=1500)

        result = await reward_guard.award(
            db_session, user_id, ActionType.SHARE_CONTENT, "share-key-0001", coordinates=nearby
        )

        assert result.flags == ["HIGH_TRAVEL_SPEED"]
        assert result.suspicious_score == 30
        assert await fake_redis.get(f"cheat:strikes:{user_id}") is None

    @pytest.mark.asyncio
    async def test_short_hop_is_ignored(self, db_session, user_id):
        await _seed_entry(db_session, user_id, "seed-journey-1", seconds_ago=1, coords=(POI_LAT, POI_LON))
        result = await reward_guard.award(
            db_session,
            user_id,
            ActionType.SHARE_CONTENT,
            "share-key-0001",
            coordinates=offset(POI_LAT, POI_LON, north_m=80),
        )
        assert result.flags == []


class TestEscalation:
    @pytest.mark.asyncio
    async def test_repeat_offender_is_denied(self, db_session, user_id, fake_redis):
        await fake_redis.set(f"cheat:strikes:{user_id}", 1)
        await _seed_entry(db_session, user_id, "seed-journey-1", seconds_ago=60, coords=(POI_LAT, POI_LON))
        far = offset(POI_LAT, POI_LON, north_m=50_000)

        with pytest.raises(AwardRejected) as exc_info:
            await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0001", coordinates=far)

        assert exc_info.value.suspicious_score == 70
        assert exc_info.value.flags == ["IMPOSSIBLE_JOURNEY", "REPEAT_OFFENDER"]
        denied = (await _ledger_rows(db_session, user_id))[-1]
        assert denied.granted is False
        assert denied.xp_awarded == 0
        assert await reward_guard.get_progress(db_session, user_id) == {"total_xp": 0, "level": 1}

        # The denial is itself idempotent.
        with pytest.raises(AwardRejected):
            await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0001", coordinates=far)
        assert len(await _ledger_rows(db_session, user_id)) == 2

    @pytest.mark.asyncio
    async def test_third_strike_bans(self, db_session, user_id, fake_redis):
        await fake_redis.set(f"cheat:strikes:{user_id}", 2)
        await _seed_entry(db_session, user_id, "seed-journey-1", seconds_ago=60, coords=(POI_LAT, POI_LON))
        far = offset(POI_LAT, POI_LON, north_m=50_000)

        with pytest.raises(AwardRejected):
            await reward_guard.award(db_session, user_id, ActionType.COMPLETE_ROUTE, "route-key-0001", coordinates=far)
        assert 0 < await fake_redis.ttl(f"ban:{user_id}") <= 3600

        with pytest.raises(RateLimited) as exc_info:
            await reward_guard.award(db_session, user_id, ActionType.RATE_POI, "rate-poi-key-1")
        assert exc_info.value.banned
        assert exc_info.value.retry_after > 0


class TestTiming:
    @pytest.mark.asyncio
    async def test_machine_regular_intervals(self, db_session, user_id):
        for i in range(6, 0, -1):
            await _seed_entry(db_session, user_id, f"seed-timing-{i}", seconds_ago=60 * i)

        result = await reward_guard.award(db_session, user_id, ActionType.SHARE_CONTENT, "share-key-0001")

        assert result.flags == ["REGULAR_TIMING_PATTERN"]
        assert result.suspicious_score == 30
        assert result.xp_awarded == 5

    @pytest.mark.asyncio
    async def test_irregular_intervals(self, db_session, user_id):
        for i, seconds in enumerate((3600, 1900, 1200, 400, 90)):
            await _seed_entry(db_session, user_id, f"seed-timing-{i}", seconds_ago=seconds)

        result = await reward_guard.award(db_session, user_id, ActionType.SHARE_CONTENT, "share-key-0001")

        assert result.flags == []


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_eleventh_attempt_in_a_minute(self, db_session, user_id):
        for i in range(10):
            await reward_guard.award(db_session, user_id, ActionType.RATE_POI, f"rate-poi-key-{i:02d}")

        with pytest.raises(RateLimited) as exc_info:
            await reward_guard.award(db_session, user_id, ActionType.RATE_POI, "rate-poi-key-10")
        assert not exc_info.value.banned
        assert 1 <= exc_info.value.retry_after <= 60

        count = (
            await db_session.execute(
                select(func.count(GamificationLog.id)).where(GamificationLog.user_id == user_id)
            )
        ).scalar_one()
        assert count == 10
