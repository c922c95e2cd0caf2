"""Tests for challenge schedule, check-in, proof and progress rules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from src.challengehub.challenges.rules import (
    calculate_progress,
    challenge_status,
    validate_checkin,
    validate_proof,
    validate_schedule,
)
from src.challengehub.challenges.schemas import (
    Cadence,
    ChallengeCreate,
    ChallengeRead,
    ChallengeStatus,
    CheckinRead,
    ProofCreate,
    ProofRead,
    ProofType,
)

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _challenge(cadence: Cadence = Cadence.DAILY, start_days: int = -2, end_days: int = 5) -> ChallengeRead:
    return ChallengeRead(
        id="c1",
        tenant_id="t1",
        whop_company_id="biz_ABC",
        title="Morning Run",
        description="",
        category="Fitness",
        proof_type=ProofType.PHOTO,
        cadence=cadence,
        start_at=NOW + timedelta(days=start_days),
        end_at=NOW + timedelta(days=end_days),
    )


def _checkin(checkin_id: str, at: datetime) -> CheckinRead:
    return CheckinRead(id=checkin_id, enrollment_id="e1", content="done", created_at=at)


def _proof(proof_id: str, at: datetime, active: bool = True) -> ProofRead:
    return ProofRead(
        id=proof_id, enrollment_id="e1", type=ProofType.PHOTO, url="https://x/p.jpg", created_at=at, is_active=active
    )


# ── Schedule ─────────────────────────────────────────────────────────────────


def test_end_before_start_is_invalid():
    assert validate_schedule(NOW, NOW - timedelta(hours=1), Cadence.DAILY) == "End date must be after start date"


def test_valid_schedule():
    assert validate_schedule(NOW, NOW + timedelta(days=7), Cadence.END_OF_CHALLENGE) is None


def test_create_schema_rejects_bad_schedule():
    with pytest.raises(ValidationError):
        ChallengeCreate(title="x", start_at=NOW, end_at=NOW)


def test_status_transitions():
    challenge = _challenge()
    assert challenge_status(challenge, NOW - timedelta(days=3)) == ChallengeStatus.UPCOMING
    assert challenge_status(challenge, NOW) == ChallengeStatus.ACTIVE
    assert challenge_status(challenge, NOW + timedelta(days=6)) == ChallengeStatus.ENDED


# ── Check-ins ────────────────────────────────────────────────────────────────


def test_checkin_before_start_rejected():
    verdict = validate_checkin(_challenge(start_days=1), now=NOW)
    assert not verdict.allowed
    assert verdict.reason == "Challenge has not started yet"


def test_daily_checkin_allowed_while_running():
    verdict = validate_checkin(_challenge(), now=NOW)
    assert verdict.allowed
    assert verdict.replaces is None


def test_daily_second_checkin_same_day_replaces_first():
    existing = [_checkin("today", NOW - timedelta(hours=2)), _checkin("yesterday", NOW - timedelta(days=1))]
    verdict = validate_checkin(_challenge(), existing, now=NOW)
    assert verdict.allowed
    assert verdict.replaces == "today"


def test_daily_checkin_after_end_rejected():
    verdict = validate_checkin(_challenge(end_days=-1), now=NOW)
    assert not verdict.allowed
    assert verdict.reason == "Challenge has already ended"


def test_end_of_challenge_checkin_only_after_end():
    running = validate_checkin(_challenge(Cadence.END_OF_CHALLENGE), now=NOW)
    assert not running.allowed

    ended = validate_checkin(_challenge(Cadence.END_OF_CHALLENGE, end_days=-1), now=NOW)
    assert ended.allowed


def test_end_of_challenge_checkin_replaces_previous():
    existing = [_checkin("old", NOW - timedelta(hours=1))]
    verdict = validate_checkin(_challenge(Cadence.END_OF_CHALLENGE, end_days=-1), existing, now=NOW)
    assert verdict.replaces == "old"


# ── Proofs ───────────────────────────────────────────────────────────────────


def test_daily_proof_replaces_todays_active_proof():
    existing = [_proof("inactive", NOW - timedelta(hours=1), active=False), _proof("active", NOW - timedelta(hours=3))]
    verdict = validate_proof(_challenge(), existing, now=NOW)
    assert verdict.allowed
    assert verdict.replaces == "active"


def test_daily_proof_from_yesterday_is_not_replaced():
    verdict = validate_proof(_challenge(), [_proof("y", NOW - timedelta(days=1))], now=NOW)
    assert verdict.allowed
    assert verdict.replaces is None


def test_end_of_challenge_proof_allowed_while_running_and_after_end():
    assert validate_proof(_challenge(Cadence.END_OF_CHALLENGE), now=NOW).allowed
    assert validate_proof(_challenge(Cadence.END_OF_CHALLENGE, end_days=-1), now=NOW).allowed


def test_end_of_challenge_latest_proof_replaces_earlier():
    verdict = validate_proof(
        _challenge(Cadence.END_OF_CHALLENGE), [_proof("first", NOW - timedelta(days=1))], now=NOW
    )
    assert verdict.replaces == "first"


def test_proof_schema_requires_matching_payload():
    with pytest.raises(ValidationError):
        ProofCreate(type=ProofType.TEXT)
    with pytest.raises(ValidationError):
        ProofCreate(type=ProofType.LINK, content="no url")
    assert ProofCreate(type=ProofType.TEXT, content="I did it").content == "I did it"


# ── Progress ─────────────────────────────────────────────────────────────────


def test_daily_progress_counts_distinct_days():
    challenge = _challenge(start_days=-2, end_days=8)  # 10 days
    checkins = [
        _checkin("a", challenge.start_at + timedelta(hours=1)),
        _checkin("b", challenge.start_at + timedelta(hours=5)),
        _checkin("c", challenge.start_at + timedelta(days=1, hours=1)),
    ]
    assert calculate_progress(challenge, checkins) == (10, 2, 20)


def test_end_of_challenge_progress_needs_proof_and_checkin():
    challenge = _challenge(Cadence.END_OF_CHALLENGE)
    proof = _proof("p", NOW)
    checkin = _checkin("c", NOW)
    assert calculate_progress(challenge, [], [proof]) == (1, 0, 0)
    assert calculate_progress(challenge, [checkin], [proof]) == (1, 1, 100)
