"""Visit validation engine.

Stages run in order and any of the first four can end the evaluation early:

1. challenge consumption
2. POI lookup, tag check, one-visit-per-POI
3. GPS scoring
4. fingerprint correlation against recently accepted visits
5. session risk
6. confidence aggregation and decision

Exactly one audit record is written per call, accepted or rejected. The engine
returns a structured result for every trust outcome; infrastructure errors give
a retryable result, and only unexpected errors propagate.
"""

from __future__ import annotations

import secrets
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from poiguard.config import Settings, get_settings
from poiguard.db.models import POI, VisitAuditLog
from poiguard.security import challenge as challenges
from poiguard.security import fingerprint as fp
from poiguard.security import session_tracker
from poiguard.security.flags import ReasonCode, VisitFlag
from poiguard.security.gps_scorer import GPSSample, score_samples
from poiguard.security.visits import AlreadyVisited, PoiReward, has_visited, record_visit
from poiguard.time_utils import utcnow

logger = structlog.get_logger()

GPS_WEIGHT = 0.70
FINGERPRINT_WEIGHT = 0.20
SESSION_WEIGHT = 0.10
SESSION_RISK_PENALTY = 25
HIGH_SESSION_RISK_COUNT = 3

REJECTED_REASON = "Visit could not be verified"
RETRY_REASON = "Validation temporarily unavailable, please retry"

INFRASTRUCTURE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError)


@dataclass(frozen=True)
class VisitClaim:
    user_id: int
    poi_id: int
    tag_uid: str
    challenge_id: str
    nonce: str
    samples: Sequence[GPSSample]
    device_info: Mapping[str, Any]
    server: fp.ServerFingerprint
    client_fingerprint: str | None = None


@dataclass
class VisitValidationResult:
    is_valid: bool
    confidence: int
    flags: list[str]
    reason: str | None
    audit_log_id: str | None
    retryable: bool = False
    visit_id: int | None = None
    points_earned: int = 0
    xp_earned: int = 0


@dataclass
class _Evaluation:
    """Mutable working state for one validation call."""

    flags: list[VisitFlag] = field(default_factory=list)
    reason_code: ReasonCode | None = None
    confidence: int = 0
    poi: PoiReward | None = None
    gps_score: int | None = None
    distances: list[float] = field(default_factory=list)
    fingerprint: fp.DeviceFingerprint | None = None
    changed_components: list[str] = field(default_factory=list)
    retryable: bool = False

    def reject(self, flag: VisitFlag | None, code: ReasonCode) -> _Evaluation:
        if flag is not None and flag not in self.flags:
            self.flags.append(flag)
        self.reason_code = code
        self.confidence = 0
        return self

    @property
    def accepted(self) -> bool:
        return self.reason_code is None


def aggregate_confidence(gps_score: int, fingerprint_score: int, session_score: int) -> int:
    """Weighted blend of the sub-scores, clamped to 0..100."""
    raw = GPS_WEIGHT * gps_score + FINGERPRINT_WEIGHT * fingerprint_score + SESSION_WEIGHT * session_score
    return max(0, min(100, round(raw)))


async def validate_visit(db: AsyncSession, claim: VisitClaim) -> VisitValidationResult:
    """Run the full validation pipeline for one claim."""
    settings = get_settings()

    try:
        ev = await _evaluate(db, claim, settings)
    except INFRASTRUCTURE_ERRORS as exc:
        logger.warning("validation_infrastructure_error", user_id=claim.user_id, error=str(exc))
        await _rollback(db)
        ev = _Evaluation(retryable=True).reject(None, ReasonCode.INFRASTRUCTURE_ERROR)
    except Exception:
        logger.exception("validation_internal_error", user_id=claim.user_id, poi_id=claim.poi_id)
        await _rollback(db)
        ev = _Evaluation().reject(None, ReasonCode.INTERNAL_ERROR)
        await _persist(db, claim, ev)
        raise

    return await _persist(db, claim, ev)


async def _evaluate(db: AsyncSession, claim: VisitClaim, settings: Settings) -> _Evaluation:
    ev = _Evaluation()

    # 1. Challenge
    try:
        await challenges.consume(db, claim.challenge_id, claim.nonce, claim.user_id)
    except challenges.ChallengeRejected as exc:
        return ev.reject(VisitFlag.INVALID_CHALLENGE, exc.code)

    # 2. POI, tag, prior visit
    poi = await db.get(POI, claim.poi_id)
    if poi is None or not poi.is_active:
        return ev.reject(VisitFlag.POI_NOT_FOUND, ReasonCode.POI_NOT_FOUND)
    ev.poi = PoiReward.of(poi)
    expected_tag = poi.tag_uid.strip().upper().encode()
    if not secrets.compare_digest(expected_tag, claim.tag_uid.strip().upper().encode()):
        return ev.reject(VisitFlag.TAG_MISMATCH, ReasonCode.TAG_MISMATCH)
    if await has_visited(db, claim.user_id, poi.id):
        return ev.reject(VisitFlag.ALREADY_VISITED, ReasonCode.ALREADY_VISITED)

    # 3. GPS
    gps = score_samples(
        claim.samples,
        poi.latitude,
        poi.longitude,
        proximity_threshold_m=settings.proximity_threshold_meters,
        accuracy_ceiling_m=settings.accuracy_ceiling_meters,
        max_speed_kmh=settings.max_sample_speed_kmh,
        min_span_ms=settings.min_sample_span_ms,
    )
    ev.gps_score = gps.score
    ev.distances = gps.distances
    ev.flags.extend(gps.flags)

    # 4. Fingerprint
    ev.fingerprint = fp.combine(claim.device_info, claim.server)
    fingerprint_score = await _fingerprint_score(db, claim.user_id, ev, settings)

    # 5. Session risk
    risk = await session_tracker.is_suspicious(
        db, claim.user_id, timedelta(hours=settings.session_risk_window_hours)
    )
    session_score = max(0, 100 - SESSION_RISK_PENALTY * risk.suspicious_session_count)
    if risk.suspicious_session_count >= HIGH_SESSION_RISK_COUNT:
        ev.flags.append(VisitFlag.HIGH_SESSION_RISK)

    # 6. Decision
    ev.confidence = aggregate_confidence(gps.score, fingerprint_score, session_score)
    hard_out_of_range = gps.out_of_range and gps.samples_evaluated >= settings.min_gps_samples
    if hard_out_of_range:
        ev.reason_code = ReasonCode.OUT_OF_RANGE
    elif ev.confidence < settings.min_confidence:
        ev.reason_code = ReasonCode.LOW_CONFIDENCE
    return ev


async def _fingerprint_score(
    db: AsyncSession,
    user_id: int,
    ev: _Evaluation,
    settings: Settings,
) -> int:
    """100 with no history, else the best similarity against recent accepted visits."""
    rows = (
        await db.execute(
            select(VisitAuditLog.device_fingerprint_id, VisitAuditLog.device_info)
            .where(
                VisitAuditLog.user_id == user_id,
                VisitAuditLog.success.is_(True),
                VisitAuditLog.device_fingerprint_id.is_not(None),
            )
            .order_by(VisitAuditLog.created_at.desc())
            .limit(settings.fingerprint_history_size)
        )
    ).all()
    if not rows or ev.fingerprint is None:
        return 100

    known = [fp.DeviceFingerprint(id=row[0], components=dict(row[1] or {})) for row in rows]
    best = max(known, key=lambda other: fp.similarity(ev.fingerprint, other))
    best_similarity = fp.similarity(ev.fingerprint, best)
    if best_similarity < settings.device_similarity_threshold:
        ev.flags.append(VisitFlag.DEVICE_CHANGED)
        ev.changed_components = fp.changed_components(best, ev.fingerprint)
        logger.info(
            "device_changed",
            user_id=user_id,
            similarity=best_similarity,
            changed=ev.changed_components,
        )
    return round(best_similarity * 100)


async def _persist(db: AsyncSession, claim: VisitClaim, ev: _Evaluation) -> VisitValidationResult:
    """Write the audit record (and the Visit when accepted), retrying once."""
    for attempt in (1, 2):
        audit = _build_audit(claim, ev)
        visit = None
        try:
            if ev.accepted and ev.poi is not None:
                try:
                    last = claim.samples[-1] if claim.samples else None
                    visit = await record_visit(db, claim.user_id, ev.poi, audit, last)
                except AlreadyVisited:
                    ev.reject(VisitFlag.ALREADY_VISITED, ReasonCode.ALREADY_VISITED)
                    audit = _build_audit(claim, ev)
            db.add(audit)
            await db.commit()
        except SQLAlchemyError as exc:
            logger.warning("audit_write_retry", attempt=attempt, error=str(exc))
            await _rollback(db)
            continue

        result = _result(ev, audit.id)
        if visit is not None:
            result.visit_id = visit.id
            result.points_earned = visit.points_earned
            result.xp_earned = visit.xp_earned
        logger.info(
            "visit_validated",
            user_id=claim.user_id,
            poi_id=claim.poi_id,
            is_valid=result.is_valid,
            confidence=result.confidence,
            flags=result.flags,
            reason_code=ev.reason_code.value if ev.reason_code else None,
            audit_log_id=audit.id,
        )
        return result

    logger.error(
        "audit_write_failed",
        user_id=claim.user_id,
        poi_id=claim.poi_id,
        flags=[f.value for f in ev.flags],
        reason_code=ev.reason_code.value if ev.reason_code else None,
    )
    if ev.accepted:
        # Without an audit row there is no Visit either; the claim must be retried.
        ev.retryable = True
        ev.reject(None, ReasonCode.INFRASTRUCTURE_ERROR)
    return _result(ev, None)


def _build_audit(claim: VisitClaim, ev: _Evaluation) -> VisitAuditLog:
    last = claim.samples[-1] if claim.samples else None
    device_info: dict[str, Any] = dict(ev.fingerprint.components) if ev.fingerprint else dict(claim.device_info)
    if ev.changed_components:
        device_info["changed_components"] = ev.changed_components
    return VisitAuditLog(
        id=str(uuid.uuid4()),
        user_id=claim.user_id,
        poi_id=claim.poi_id,
        tag_uid=claim.tag_uid,
        challenge_id=claim.challenge_id,
        success=ev.accepted,
        confidence=ev.confidence,
        flags=[f.value for f in ev.flags],
        reason_code=ev.reason_code.value if ev.reason_code else None,
        gps_score=ev.gps_score,
        gps_samples=[
            {**asdict(s), "distance_m": d}
            for s, d in zip(claim.samples, ev.distances or [None] * len(claim.samples))
        ],
        device_fingerprint_id=ev.fingerprint.id if ev.fingerprint else None,
        device_info=device_info,
        client_fingerprint=claim.client_fingerprint,
        latitude=last.latitude if last else None,
        longitude=last.longitude if last else None,
        accuracy=last.accuracy if last else None,
        created_at=utcnow(),
    )


def _result(ev: _Evaluation, audit_log_id: str | None) -> VisitValidationResult:
    if ev.retryable:
        reason: str | None = RETRY_REASON
    elif ev.accepted:
        reason = None
    else:
        reason = REJECTED_REASON
    return VisitValidationResult(
        is_valid=ev.accepted,
        confidence=ev.confidence,
        flags=[f.value for f in ev.flags],
        reason=reason,
        audit_log_id=audit_log_id,
        retryable=ev.retryable,
    )


async def _rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError as exc:
        logger.warning("session_rollback_failed", error=str(exc))
