"""Challenge participation rules.

Pure functions over read schemas; no I/O. Day boundaries are UTC calendar
days.

Cadence semantics:
- DAILY: check-ins and proofs are accepted while the challenge runs. A
  second submission on the same day replaces the first.
- END_OF_CHALLENGE: a single proof may be submitted at any time after the
  start (the latest one replaces earlier ones). The closing check-in is only
  accepted once the challenge has ended.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone

from src.challengehub.challenges.schemas import (
    Cadence,
    ChallengeRead,
    ChallengeStatus,
    CheckinRead,
    ProofRead,
)

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class RuleResult:
    """Outcome of a participation check.

    ``replaces`` is the id of the check-in or proof the new submission will
    replace, if any.
    """

    allowed: bool
    reason: str
    replaces: str | None = None


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _now(now: datetime | None) -> datetime:
    return _utc(now) if now is not None else datetime.now(timezone.utc)


def _same_day(value: datetime, now: datetime) -> bool:
    day_start = datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    return day_start <= _utc(value) < day_start + _DAY


def is_active(challenge: ChallengeRead, now: datetime | None = None) -> bool:
    current = _now(now)
    return _utc(challenge.start_at) <= current <= _utc(challenge.end_at)


def is_ended(challenge: ChallengeRead, now: datetime | None = None) -> bool:
    return _now(now) > _utc(challenge.end_at)


def challenge_status(challenge: ChallengeRead, now: datetime | None = None) -> ChallengeStatus:
    current = _now(now)
    if current < _utc(challenge.start_at):
        return ChallengeStatus.UPCOMING
    if is_ended(challenge, current):
        return ChallengeStatus.ENDED
    return ChallengeStatus.ACTIVE


def validate_schedule(start_at: datetime, end_at: datetime, cadence: Cadence) -> str | None:
    """Return an error message for an invalid schedule, None when valid."""
    if _utc(end_at) <= _utc(start_at):
        return "End date must be after start date"
    if cadence == Cadence.DAILY:
        duration_days = math.ceil((_utc(end_at) - _utc(start_at)) / _DAY)
        if duration_days < 1:
            return "Daily challenge must last at least 1 day"
    return None


def validate_checkin(
    challenge: ChallengeRead,
    existing: Sequence[CheckinRead] = (),
    now: datetime | None = None,
) -> RuleResult:
    current = _now(now)
    if current < _utc(challenge.start_at):
        return RuleResult(False, "Challenge has not started yet")

    if challenge.cadence == Cadence.END_OF_CHALLENGE:
        if not is_ended(challenge, current):
            return RuleResult(False, "Check-in is only possible after the challenge ends")
        if existing:
            return RuleResult(True, "Existing check-in will be replaced", replaces=existing[0].id)
        return RuleResult(True, "Check-in possible after challenge ends")

    if is_ended(challenge, current):
        return RuleResult(False, "Challenge has already ended")

    today = next((c for c in existing if _same_day(c.created_at, current)), None)
    if today is not None:
        return RuleResult(True, "Today's check-in can be updated", replaces=today.id)
    return RuleResult(True, "Daily check-in possible")


def validate_proof(
    challenge: ChallengeRead,
    existing: Sequence[ProofRead] = (),
    now: datetime | None = None,
) -> RuleResult:
    current = _now(now)
    if current < _utc(challenge.start_at):
        return RuleResult(False, "Challenge has not started yet")

    active = [p for p in existing if p.is_active]

    if challenge.cadence == Cadence.END_OF_CHALLENGE:
        if active:
            return RuleResult(
                True,
                "The previous proof will be replaced. Only the latest proof counts.",
                replaces=active[0].id,
            )
        return RuleResult(True, "Proof submission possible")

    if is_ended(challenge, current):
        return RuleResult(False, "Challenge has already ended")

    today = next((p for p in active if _same_day(p.created_at, current)), None)
    if today is not None:
        return RuleResult(
            True,
            "A proof was already uploaded today. The new one replaces it.",
            replaces=today.id,
        )
    return RuleResult(True, "Daily proof submission possible")


def calculate_progress(
    challenge: ChallengeRead,
    checkins: Sequence[CheckinRead] = (),
    proofs: Sequence[ProofRead] = (),
) -> tuple[int, int, int]:
    """Return (total_days, completed_days, progress_percentage).

    END_OF_CHALLENGE challenges have a single unit of progress, completed once
    there is an active proof and a check-in. DAILY challenges count distinct
    days (since start) with a check-in.
    """
    if challenge.cadence == Cadence.END_OF_CHALLENGE:
        done = any(p.is_active for p in proofs) and len(checkins) > 0
        return 1, int(done), 100 if done else 0

    start = _utc(challenge.start_at)
    total_days = math.ceil((_utc(challenge.end_at) - start) / _DAY)
    days: set[int] = set()
    for checkin in checkins:
        offset = math.floor((_utc(checkin.created_at) - start) / _DAY)
        if 0 <= offset < total_days:
            days.add(offset)
    completed = len(days)
    percentage = round(completed / total_days * 100) if total_days > 0 else 0
    return total_days, completed, percentage
