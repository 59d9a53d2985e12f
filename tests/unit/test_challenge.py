"""Challenge issuance and single-use consumption."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from poiguard.database import get_session_factory
from poiguard.db.models import VisitChallenge
from poiguard.security import challenge as challenges
from poiguard.security.challenge import ChallengeRejected
from poiguard.security.flags import ReasonCode
from poiguard.time_utils import ensure_utc, utcnow


class TestIssue:
    @pytest.mark.asyncio
    async def test_issue_persists_challenge(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)

        assert len(challenge.nonce) == 64
        assert int(challenge.nonce, 16) >= 0
        assert challenge.expires_at - challenge.issued_at == timedelta(seconds=60)

        stored = (
            await db_session.execute(select(VisitChallenge).where(VisitChallenge.id == challenge.id))
        ).scalar_one()
        assert stored.user_id == user.id
        assert stored.consumed_at is None

    @pytest.mark.asyncio
    async def test_nonces_are_unique(self, db_session, make_user):
        user = await make_user()
        nonces = {(await challenges.issue(db_session, user.id)).nonce for _ in range(5)}
        assert len(nonces) == 5


class TestConsume:
    @pytest.mark.asyncio
    async def test_consume_once(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)

        await challenges.consume(db_session, challenge.id, challenge.nonce, user.id)

        stored = (
            await db_session.execute(
                select(VisitChallenge.consumed_at).where(VisitChallenge.id == challenge.id)
            )
        ).scalar_one()
        assert stored is not None

    @pytest.mark.asyncio
    async def test_second_consume_is_already_used(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)
        await challenges.consume(db_session, challenge.id, challenge.nonce, user.id)

        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, challenge.id, challenge.nonce, user.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_ALREADY_USED

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, db_session, make_user):
        user = await make_user()
        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, "does-not-exist", "0" * 64, user.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_challenge_looks_missing(self, db_session, make_user):
        owner = await make_user("owner")
        thief = await make_user("thief")
        challenge = await challenges.issue(db_session, owner.id)

        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, challenge.id, challenge.nonce, thief.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_NOT_FOUND

        # Still usable by its owner.
        await challenges.consume(db_session, challenge.id, challenge.nonce, owner.id)

    @pytest.mark.asyncio
    async def test_nonce_mismatch_does_not_burn_challenge(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)

        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, challenge.id, "f" * 64, user.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_NONCE_MISMATCH

        await challenges.consume(db_session, challenge.id, challenge.nonce, user.id)

    @pytest.mark.asyncio
    async def test_non_ascii_nonce_is_a_mismatch(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)

        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, challenge.id, "ü" * 64, user.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_NONCE_MISMATCH

    @pytest.mark.asyncio
    async def test_expired_challenge(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)
        challenge.expires_at = utcnow() - timedelta(seconds=1)
        await db_session.commit()

        with pytest.raises(ChallengeRejected) as exc_info:
            await challenges.consume(db_session, challenge.id, challenge.nonce, user.id)
        assert exc_info.value.code == ReasonCode.CHALLENGE_EXPIRED

    @pytest.mark.asyncio
    async def test_concurrent_consumers_exactly_one_wins(self, db_session, make_user):
        user = await make_user()
        challenge = await challenges.issue(db_session, user.id)
        user_id, challenge_id, nonce = user.id, challenge.id, challenge.nonce

        async def attempt() -> ReasonCode | None:
            async with get_session_factory()() as session:
                try:
                    await challenges.consume(session, challenge_id, nonce, user_id)
                except ChallengeRejected as exc:
                    return exc.code
                return None

        outcomes = await asyncio.gather(*(attempt() for _ in range(5)))

        assert outcomes.count(None) == 1
        assert all(code == ReasonCode.CHALLENGE_ALREADY_USED for code in outcomes if code is not None)


class TestPurge:
    @pytest.mark.asyncio
    async def test_purges_expired_and_consumed_only(self, db_session, make_user):
        user = await make_user()
        now = utcnow()
        fresh = await challenges.issue(db_session, user.id)
        stale = await challenges.issue(db_session, user.id)
        used = await challenges.issue(db_session, user.id)
        stale.expires_at = now - timedelta(minutes=30)
        used.consumed_at = now - timedelta(minutes=20)
        await db_session.commit()
        fresh_id = fresh.id

        deleted = await challenges.purge_expired(db_session, now - timedelta(minutes=10))

        assert deleted == 2
        remaining = (await db_session.execute(select(VisitChallenge.id))).scalars().all()
        assert remaining == [fresh_id]
        assert ensure_utc(fresh.expires_at) > now
