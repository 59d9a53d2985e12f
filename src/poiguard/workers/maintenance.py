"""arq maintenance worker.

Import path for arq CLI: arq poiguard.workers.maintenance.WorkerSettings

- every 10 minutes: delete challenges that expired or were consumed
- nightly: prune low-risk ledger entries and session logs past retention,
  and drop expired sessions

Visit audit logs are never pruned here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from arq import cron
from arq.connections import RedisSettings
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import get_settings
from poiguard.database import close_db, get_session_factory, init_db
from poiguard.db.models import GamificationLog, SessionLog, UserSession
from poiguard.security.challenge import purge_expired
from poiguard.time_utils import utcnow

logger = logging.getLogger(__name__)


async def purge_stale_challenges(db: AsyncSession, now: datetime | None = None) -> int:
    settings = get_settings()
    now = now or utcnow()
    return await purge_expired(db, now - timedelta(minutes=settings.challenge_retention_minutes))


async def prune_old_logs(db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """Apply retention. Suspicious ledger entries are kept for investigation."""
    settings = get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.log_retention_days)

    ledger = await db.execute(
        delete(GamificationLog).where(
            GamificationLog.created_at < cutoff,
            GamificationLog.suspicious_score < settings.suspicious_flag_threshold,
        )
    )
    session_logs = await db.execute(delete(SessionLog).where(SessionLog.created_at < cutoff))
    sessions = await db.execute(delete(UserSession).where(UserSession.expires_at < now))
    await db.commit()
    return {
        "ledger": ledger.rowcount or 0,
        "session_logs": session_logs.rowcount or 0,
        "sessions": sessions.rowcount or 0,
    }


async def purge_challenges_job(ctx: dict) -> int:  # type: ignore[type-arg]
    """Cron entry: challenge garbage collection."""
    async with get_session_factory()() as db:
        count = await purge_stale_challenges(db)
    if count:
        logger.info("Purged %d stale challenges", count)
    return count


async def prune_logs_job(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Cron entry: nightly retention."""
    async with get_session_factory()() as db:
        counts = await prune_old_logs(db)
    logger.info(
        "Pruned ledger=%d session_logs=%d sessions=%d",
        counts["ledger"],
        counts["session_logs"],
        counts["sessions"],
    )
    return counts


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    settings = get_settings()
    await init_db(settings.database_url)
    logger.info("Maintenance worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    await close_db()
    logger.info("Maintenance worker shut down")


class WorkerSettings:
    """arq worker settings for maintenance jobs."""

    functions = [purge_challenges_job, prune_logs_job]
    cron_jobs = [
        cron(purge_challenges_job, minute=set(range(0, 60, 10)), run_at_startup=True),
        cron(prune_logs_job, hour={3}, minute={30}),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 2
    job_timeout = 300
