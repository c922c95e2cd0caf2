"""Offer eligibility from a participant's completion rate."""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from src.challengehub.challenges.schemas import Cadence, ChallengeRead, ProofRead
from src.challengehub.offers.schemas import OfferRead, OfferType

DEFAULT_COMPLETION_MIN = 90
DEFAULT_MID_CHALLENGE_MIN = 25
DEFAULT_MID_CHALLENGE_MAX = 89


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def completion_rate(
    challenge: ChallengeRead,
    proofs: Sequence[ProofRead],
    now: datetime | None = None,
) -> int:
    """Percentage (0-100) of expected submissions the participant has made.

    DAILY: active proofs over days elapsed since the start (end date caps the
    count, minimum one day). END_OF_CHALLENGE: 100 with an active proof.
    """
    active = [p for p in proofs if p.is_active]
    if challenge.cadence == Cadence.END_OF_CHALLENGE:
        return 100 if active else 0

    current = _aware(now) if now is not None else datetime.now(timezone.utc)
    start = _aware(challenge.start_at)
    until = min(current, _aware(challenge.end_at))
    elapsed_days = math.floor((until - start) / timedelta(days=1)) + 1
    expected = max(1, elapsed_days)
    return min(100, round(len(active) / expected * 100))


def is_eligible(offer: OfferRead, rate: int, is_winner: bool = False) -> bool:
    if not offer.is_active:
        return False
    if offer.offer_type == OfferType.WINNER:
        return is_winner
    if offer.offer_type == OfferType.COMPLETION:
        minimum = offer.min_completion_rate if offer.min_completion_rate is not None else DEFAULT_COMPLETION_MIN
        return rate >= minimum
    minimum = offer.min_completion_rate if offer.min_completion_rate is not None else DEFAULT_MID_CHALLENGE_MIN
    maximum = offer.max_completion_rate if offer.max_completion_rate is not None else DEFAULT_MID_CHALLENGE_MAX
    return minimum <= rate <= maximum
