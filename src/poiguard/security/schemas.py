"""Pydantic request/response models for the security endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from poiguard.config import get_settings
from poiguard.security.reward_guard import ActionType


# --- Challenge ---


class ChallengeResponse(BaseModel):
    challenge_id: str
    nonce: str
    issued_at: datetime
    expires_at: datetime


# --- Visit validation ---


class GPSSampleIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float = Field(ge=0)
    timestamp_ms: int = Field(ge=0)
    altitude: float | None = None
    speed: float | None = None
    heading: float | None = None


class DeviceInfoIn(BaseModel):
    user_agent: str | None = Field(default=None, max_length=512)
    screen_resolution: str | None = Field(default=None, max_length=32)
    timezone: str | None = Field(default=None, max_length=64)
    language: str | None = Field(default=None, max_length=32)
    platform: str | None = Field(default=None, max_length=64)
    vendor: str | None = Field(default=None, max_length=64)
    cookies_enabled: bool = True
    do_not_track: str | None = Field(default=None, max_length=8)


class ValidateVisitRequest(BaseModel):
    poi_id: int
    tag_uid: str = Field(min_length=1, max_length=64)
    challenge_id: str = Field(min_length=1, max_length=64)
    nonce: str = Field(pattern=r"^[0-9a-f]{64}$")
    gps_samples: list[GPSSampleIn]
    device_info: DeviceInfoIn = Field(default_factory=DeviceInfoIn)
    client_fingerprint: str | None = Field(default=None, max_length=128)

    @field_validator("gps_samples")
    @classmethod
    def _sample_count(cls, v: list[GPSSampleIn]) -> list[GPSSampleIn]:
        settings = get_settings()
        if not settings.min_gps_samples <= len(v) <= settings.max_gps_samples:
            msg = f"between {settings.min_gps_samples} and {settings.max_gps_samples} GPS samples are required"
            raise ValueError(msg)
        return v


class VisitOut(BaseModel):
    id: int
    points_earned: int
    xp_earned: int


class ValidateVisitResponse(BaseModel):
    is_valid: bool
    confidence: int
    flags: list[str]
    reason: str | None = None
    audit_log_id: str | None = None
    visit: VisitOut | None = None


# --- Rewards ---


class CoordinatesIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class AwardRequest(BaseModel):
    action_type: ActionType
    idempotency_key: str = Field(min_length=8, max_length=256)
    poi_id: int | None = None
    coordinates: CoordinatesIn | None = None
    metadata: dict[str, Any] = {}


class AwardResponse(BaseModel):
    xp_awarded: int
    new_total: int
    level: int
    suspicious_score: int = 0
    flags: list[str] = []
    replayed: bool = False


# --- Sessions ---


class SessionOut(BaseModel):
    session_token: str
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    last_seen_at: datetime
    current: bool = False


class SessionsResponse(BaseModel):
    sessions: list[SessionOut]


class SessionEventRequest(BaseModel):
    action: Literal["LOGIN", "LOGOUT", "REFRESH"]
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    device_fingerprint: str | None = Field(default=None, max_length=64)


class SessionEventResponse(BaseModel):
    suspicious: bool
    flags: list[str]


class RevokeRequest(BaseModel):
    session_token: str | None = Field(default=None, max_length=128)
    all: bool = False
    reason: str = Field(default="user_request", max_length=256)

    @model_validator(mode="after")
    def _one_target(self) -> RevokeRequest:
        if not self.all and not self.session_token:
            msg = "either session_token or all=true is required"
            raise ValueError(msg)
        return self


class RevokeResponse(BaseModel):
    revoked: int


# --- Admin metrics ---


class FlagCount(BaseModel):
    flag: str
    count: int


class SecurityMetricsResponse(BaseModel):
    range: str
    total_visits: int
    spoofing_attempts: int
    avg_confidence_score: float
    top_flags: list[FlagCount]
    active_sessions: int
    suspicious_sessions: int
    revoked_sessions: int
    xp_awarded: int
    cheating_attempts: int
    blocked_actions: int


# --- Progress ---


class BadgeOut(BaseModel):
    slug: str
    name: str


class ProgressResponse(BaseModel):
    total_xp: int
    level: int
    xp_into_level: int
    xp_for_level: int
    next_level: int
    total_points: int
    visits: int
    badges: list[BadgeOut] = []
