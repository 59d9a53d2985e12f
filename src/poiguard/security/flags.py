"""Stable flag identifiers shared by the scorers, the guard and the audit trail."""

from __future__ import annotations

from enum import Enum


class VisitFlag(str, Enum):
    OUT_OF_RANGE = "OUT_OF_RANGE"
    LOW_ACCURACY = "LOW_ACCURACY"
    IMPOSSIBLE_SPEED = "IMPOSSIBLE_SPEED"
    SUSPICIOUS_TIMING = "SUSPICIOUS_TIMING"
    STATIC_COORDINATES = "STATIC_COORDINATES"
    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    TAG_MISMATCH = "TAG_MISMATCH"
    DEVICE_CHANGED = "DEVICE_CHANGED"
    POI_NOT_FOUND = "POI_NOT_FOUND"
    ALREADY_VISITED = "ALREADY_VISITED"
    HIGH_SESSION_RISK = "HIGH_SESSION_RISK"


class RewardFlag(str, Enum):
    IMPOSSIBLE_JOURNEY = "IMPOSSIBLE_JOURNEY"
    HIGH_TRAVEL_SPEED = "HIGH_TRAVEL_SPEED"
    REGULAR_TIMING_PATTERN = "REGULAR_TIMING_PATTERN"
    REPEAT_OFFENDER = "REPEAT_OFFENDER"


class SessionFlag(str, Enum):
    RAPID_SESSION_CHURN = "RAPID_SESSION_CHURN"
    CONCURRENT_DISTANT_SESSIONS = "CONCURRENT_DISTANT_SESSIONS"
    MULTIPLE_LOCATIONS = "MULTIPLE_LOCATIONS"


class ReasonCode(str, Enum):
    """Internal rejection detail. Stored in the audit row, never returned to clients."""

    CHALLENGE_NOT_FOUND = "CHALLENGE_NOT_FOUND"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_ALREADY_USED = "CHALLENGE_ALREADY_USED"
    CHALLENGE_NONCE_MISMATCH = "CHALLENGE_NONCE_MISMATCH"
    POI_NOT_FOUND = "POI_NOT_FOUND"
    TAG_MISMATCH = "TAG_MISMATCH"
    ALREADY_VISITED = "ALREADY_VISITED"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Deducted from a starting GPS score of 100.
GPS_PENALTIES: dict[VisitFlag, int] = {
    VisitFlag.OUT_OF_RANGE: 60,
    VisitFlag.IMPOSSIBLE_SPEED: 40,
    VisitFlag.STATIC_COORDINATES: 35,
    VisitFlag.SUSPICIOUS_TIMING: 20,
    VisitFlag.LOW_ACCURACY: 15,
}

# Added to the reward suspicion score.
REWARD_PENALTIES: dict[RewardFlag, int] = {
    RewardFlag.IMPOSSIBLE_JOURNEY: 60,
    RewardFlag.HIGH_TRAVEL_SPEED: 30,
    RewardFlag.REGULAR_TIMING_PATTERN: 30,
}
