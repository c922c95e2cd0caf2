"""Per-challenge participation analytics.

Pure functions over read schemas; no I/O.

Figures:
    active participant    a check-in within the last ACTIVE_WINDOW_DAYS days
    completion rate       completed check-in days / (days x participants)
    retention rate        active participants / participants
    engagement score      up to 5 points for consistency since joining plus
                          0.5 per check-in (at most 5), capped at 10
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from src.challengehub.challenges.rules import calculate_progress, challenge_status
from src.challengehub.challenges.schemas import (
    ChallengeAnalytics,
    ChallengeRead,
    CheckinRead,
    DailyCheckinCount,
    EnrollmentRead,
    ParticipantEngagement,
    ProofRead,
)

ACTIVE_WINDOW_DAYS = 7
TOP_PERFORMERS = 10
MAX_ENGAGEMENT = 10.0

_DAY = timedelta(days=1)


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _percent(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole > 0 else 0.0


def engagement_score(
    challenge: ChallengeRead,
    enrollment: EnrollmentRead,
    completed_days: int,
    checkins: int,
    now: datetime,
) -> float:
    start = max(_utc(challenge.start_at), _utc(enrollment.joined_at or challenge.start_at))
    end = min(_utc(challenge.end_at), now)
    elapsed = max(math.ceil((end - start) / _DAY), 1)
    consistency = min(completed_days / elapsed, 1.0)
    score = consistency * 5 + min(checkins * 0.5, 5.0)
    return round(min(score, MAX_ENGAGEMENT), 1)


def challenge_analytics(
    challenge: ChallengeRead,
    enrollments: Sequence[EnrollmentRead],
    checkins: Sequence[CheckinRead],
    proofs: Sequence[ProofRead],
    now: datetime | None = None,
) -> ChallengeAnalytics:
    """Summarize participation in ``challenge``.

    ``checkins`` and ``proofs`` may span every enrollment of the challenge;
    rows of other enrollments are ignored.
    """
    now = _utc(now) if now is not None else datetime.now(timezone.utc)
    enrolled = {e.id for e in enrollments}
    checkins_by_enrollment: dict[str, list[CheckinRead]] = defaultdict(list)
    proofs_by_enrollment: dict[str, list[ProofRead]] = defaultdict(list)
    for checkin in checkins:
        if checkin.enrollment_id in enrolled:
            checkins_by_enrollment[checkin.enrollment_id].append(checkin)
    for proof in proofs:
        if proof.enrollment_id in enrolled:
            proofs_by_enrollment[proof.enrollment_id].append(proof)

    active_since = now - ACTIVE_WINDOW_DAYS * _DAY
    today = now.astimezone(timezone.utc).date()
    window = [today - timedelta(days=offset) for offset in range(ACTIVE_WINDOW_DAYS - 1, -1, -1)]
    per_day = {day: 0 for day in window}

    participants: list[ParticipantEngagement] = []
    total_days = 0
    completed_total = 0
    active = 0
    for enrollment in enrollments:
        own = checkins_by_enrollment.get(enrollment.id, [])
        own_proofs = proofs_by_enrollment.get(enrollment.id, [])
        total_days, completed, percentage = calculate_progress(challenge, own, own_proofs)
        completed_total += completed
        last = max((_utc(c.created_at) for c in own), default=None)
        if last is not None and last >= active_since:
            active += 1
        for checkin in own:
            day = _utc(checkin.created_at).date()
            if day in per_day:
                per_day[day] += 1
        participants.append(
            ParticipantEngagement(
                user_id=enrollment.user_id,
                checkins=len(own),
                completed_days=completed,
                progress_percentage=percentage,
                engagement_score=engagement_score(challenge, enrollment, completed, len(own), now),
                last_checkin_at=last,
            )
        )

    count = len(participants)
    average = round(sum(p.engagement_score for p in participants) / count, 1) if count else 0.0
    ranked = sorted(participants, key=lambda p: (-p.engagement_score, -p.checkins))
    return ChallengeAnalytics(
        challenge_id=challenge.id,
        status=challenge_status(challenge, now),
        total_participants=count,
        active_participants=active,
        total_checkins=sum(p.checkins for p in participants),
        active_proofs=sum(1 for items in proofs_by_enrollment.values() for p in items if p.is_active),
        completion_rate=_percent(completed_total, total_days * count),
        retention_rate=_percent(active, count),
        average_engagement=average,
        daily_checkins=[DailyCheckinCount(day=day, checkins=per_day[day]) for day in window],
        top_performers=ranked[:TOP_PERFORMERS],
    )
