"""Engagement scoring and winner selection.

Score per participant:
    10 points per active proof
    +20 consistency bonus with 3 or more active proofs
    +15 recent-activity bonus when a proof was submitted in the last 24 hours

Participants below the minimum proof count are not ranked. Ties keep the
enrollment order (earlier joiners first).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from src.challengehub.challenges.schemas import ProofRead

POINTS_PER_PROOF = 10
CONSISTENCY_THRESHOLD = 3


class NotEnoughParticipantsError(ValueError):
    """Fewer ranked participants than the selection requires."""


@dataclass(frozen=True)
class WinnerConfig:
    min_participants: int = 1
    max_winners: int = 3
    require_min_proofs: int = 1
    consistency_bonus: int = 20
    recent_bonus: int = 15
    reward_titles: tuple[str, ...] = (
        "First Place Winner",
        "Second Place Winner",
        "Third Place Winner",
    )
    reward_descriptions: tuple[str, ...] = ()


@dataclass(frozen=True)
class Participant:
    user_id: str
    proofs: Sequence[ProofRead] = field(default_factory=tuple)
    whop_user_id: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class ParticipantScore:
    participant: Participant
    score: int
    base_score: int
    consistency_bonus: int
    recent_activity_bonus: int
    proofs_count: int


@dataclass(frozen=True)
class WinnerResult:
    place: int
    user_id: str
    score: int
    title: str
    description: str
    selection_reason: str


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def score_participants(
    participants: Sequence[Participant],
    now: datetime | None = None,
    config: WinnerConfig | None = None,
) -> list[ParticipantScore]:
    """Score and rank participants, highest score first."""
    cfg = config or WinnerConfig()
    current = now or datetime.now(timezone.utc)
    recent_cutoff = current - timedelta(hours=24)

    scored: list[ParticipantScore] = []
    for participant in participants:
        active = [p for p in participant.proofs if p.is_active]
        if len(active) < cfg.require_min_proofs:
            continue
        base = len(active) * POINTS_PER_PROOF
        consistency = cfg.consistency_bonus if len(active) >= CONSISTENCY_THRESHOLD else 0
        recent = cfg.recent_bonus if any(_aware(p.created_at) > recent_cutoff for p in active) else 0
        scored.append(
            ParticipantScore(
                participant=participant,
                score=base + consistency + recent,
                base_score=base,
                consistency_bonus=consistency,
                recent_activity_bonus=recent,
                proofs_count=len(active),
            )
        )

    # sorted() is stable, so equal scores keep input order
    return sorted(scored, key=lambda s: s.score, reverse=True)


def select_winners(
    scored: Sequence[ParticipantScore],
    config: WinnerConfig | None = None,
) -> list[WinnerResult]:
    """Take the top ``max_winners`` ranked participants.

    Raises:
        NotEnoughParticipantsError: Fewer than ``min_participants`` are ranked.
    """
    cfg = config or WinnerConfig()
    if len(scored) < cfg.min_participants:
        raise NotEnoughParticipantsError(
            f"Not enough participants. Need at least {cfg.min_participants}, got {len(scored)}"
        )

    winners: list[WinnerResult] = []
    for index, entry in enumerate(scored[: cfg.max_winners]):
        place = index + 1
        title = cfg.reward_titles[index] if index < len(cfg.reward_titles) else f"Place {place}"
        description = (
            cfg.reward_descriptions[index]
            if index < len(cfg.reward_descriptions)
            else f"Winner of place {place}"
        )
        winners.append(
            WinnerResult(
                place=place,
                user_id=entry.participant.user_id,
                score=entry.score,
                title=title,
                description=description,
                selection_reason=f"Selected for {title} with {entry.score} engagement points",
            )
        )
    return winners
