"""Pydantic schemas for challenges, enrollments, check-ins, proofs and winners.

Defines:
- Enums: Cadence, ProofType, ChallengeStatus, WinnerSelectionMode
- Challenge payloads: RewardSpec, ChallengeCreate/Update/Read
- Participation: EnrollmentRead, CheckinCreate/Read, ProofCreate/Read, ProgressRead
- Ranking: LeaderboardEntry, ManualWinner, WinnerSelectRequest, WinnerRead
- Analytics: DailyCheckinCount, ParticipantEngagement, ChallengeAnalytics
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class Cadence(str, Enum):
    """How often participants report progress."""

    DAILY = "DAILY"
    END_OF_CHALLENGE = "END_OF_CHALLENGE"


class ProofType(str, Enum):
    PHOTO = "PHOTO"
    TEXT = "TEXT"
    LINK = "LINK"


class ChallengeStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"


class WinnerSelectionMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


# ── Challenge Schemas ───────────────────────────────────────────────────────


class RewardSpec(BaseModel):
    place: int = Field(ge=1)
    title: str
    desc: str | None = None


class ChallengeCreate(BaseModel):
    """Schema for creating a challenge (admin only)."""

    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    image_url: str | None = None
    category: str = "General"
    proof_type: ProofType = ProofType.PHOTO
    cadence: Cadence = Cadence.DAILY
    start_at: datetime
    end_at: datetime
    max_participants: int | None = Field(default=None, ge=1)
    rewards: list[RewardSpec] = Field(default_factory=list)
    policy: str | None = None
    entry_price_cents: int = Field(default=0, ge=0)
    whop_experience_id: str | None = None

    @model_validator(mode="after")
    def _check_schedule(self) -> ChallengeCreate:
        from src.challengehub.challenges.rules import validate_schedule

        error = validate_schedule(self.start_at, self.end_at, self.cadence)
        if error is not None:
            raise ValueError(error)
        return self

    def rules_document(self) -> dict[str, Any]:
        return {
            "max_participants": self.max_participants,
            "rewards": [r.model_dump() for r in self.rewards],
            "policy": self.policy,
        }


class ChallengeUpdate(BaseModel):
    """Partial update; only fields that are set are written."""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    image_url: str | None = None
    category: str | None = None
    proof_type: ProofType | None = None
    cadence: Cadence | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    max_participants: int | None = Field(default=None, ge=1)
    rewards: list[RewardSpec] | None = None
    policy: str | None = None
    entry_price_cents: int | None = Field(default=None, ge=0)


class ChallengeRead(BaseModel):
    id: str
    tenant_id: str
    whop_company_id: str
    whop_experience_id: str | None = None
    creator_id: str | None = None
    title: str
    description: str
    image_url: str | None = None
    category: str
    proof_type: ProofType
    cadence: Cadence
    start_at: datetime
    end_at: datetime
    rules: dict[str, Any] = Field(default_factory=dict)
    entry_price_cents: int = 0
    currency: str = "usd"
    participant_count: int = 0
    created_at: datetime | None = None

    @property
    def max_participants(self) -> int | None:
        return self.rules.get("max_participants")


# ── Participation Schemas ───────────────────────────────────────────────────


class EnrollmentRead(BaseModel):
    id: str
    challenge_id: str
    user_id: str
    source: str = "free"
    joined_at: datetime | None = None


class CheckinCreate(BaseModel):
    content: str | None = None
    image_url: str | None = None
    link_url: str | None = None

    @model_validator(mode="after")
    def _not_empty(self) -> CheckinCreate:
        if not (self.content or self.image_url or self.link_url):
            raise ValueError("A check-in needs text, an image or a link")
        return self


class CheckinRead(BaseModel):
    id: str
    enrollment_id: str
    content: str | None = None
    image_url: str | None = None
    link_url: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class ProofCreate(BaseModel):
    type: ProofType
    url: str | None = None
    content: str | None = None

    @model_validator(mode="after")
    def _matches_type(self) -> ProofCreate:
        if self.type == ProofType.TEXT and not self.content:
            raise ValueError("TEXT proofs need content")
        if self.type in (ProofType.PHOTO, ProofType.LINK) and not self.url:
            raise ValueError(f"{self.type.value} proofs need a url")
        return self


class ProofRead(BaseModel):
    id: str
    enrollment_id: str
    type: ProofType
    url: str | None = None
    content: str | None = None
    version: int = 1
    is_active: bool = True
    created_at: datetime
    updated_at: datetime | None = None


class ProgressRead(BaseModel):
    challenge_id: str
    status: ChallengeStatus
    total_days: int
    completed_days: int
    progress_percentage: int
    checkins: int
    active_proofs: int


# ── Ranking Schemas ─────────────────────────────────────────────────────────


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    whop_user_id: str | None = None
    name: str | None = None
    score: int
    proofs_count: int
    base_score: int
    consistency_bonus: int
    recent_activity_bonus: int


class ManualWinner(BaseModel):
    user_id: str
    place: int = Field(ge=1)
    title: str | None = None
    description: str | None = None


class WinnerSelectRequest(BaseModel):
    mode: WinnerSelectionMode = WinnerSelectionMode.AUTO
    max_winners: int = Field(default=3, ge=1, le=10)
    winners: list[ManualWinner] = Field(default_factory=list)

    @model_validator(mode="after")
    def _manual_needs_winners(self) -> WinnerSelectRequest:
        if self.mode == WinnerSelectionMode.MANUAL:
            if not self.winners:
                raise ValueError("Manual selection needs at least one winner")
            places = [w.place for w in self.winners]
            if len(places) != len(set(places)):
                raise ValueError("Each place can only be awarded once")
        return self


class WinnerRead(BaseModel):
    id: str
    challenge_id: str
    user_id: str
    place: int
    title: str
    description: str | None = None
    score: float = 0.0
    selection_reason: str | None = None
    created_at: datetime | None = None


# ── Analytics ───────────────────────────────────────────────────────────────


class DailyCheckinCount(BaseModel):
    day: date
    checkins: int = 0


class ParticipantEngagement(BaseModel):
    user_id: str
    checkins: int
    completed_days: int
    progress_percentage: int
    engagement_score: float
    last_checkin_at: datetime | None = None


class ChallengeAnalytics(BaseModel):
    """Participation figures for one challenge, as shown to its admins.

    Rates are percentages rounded to one decimal.
    """

    challenge_id: str
    status: ChallengeStatus
    total_participants: int
    active_participants: int
    total_checkins: int
    active_proofs: int
    completion_rate: float
    retention_rate: float
    average_engagement: float
    daily_checkins: list[DailyCheckinCount] = Field(default_factory=list)
    top_performers: list[ParticipantEngagement] = Field(default_factory=list)
