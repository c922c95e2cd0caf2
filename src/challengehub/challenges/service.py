"""Challenge participation and winner orchestration.

ChallengeService combines the repository with the pure rules in rules.py and
winners.py. All calls take the caller's IdentityContext (or its TenantScope),
so everything read or written stays inside the caller's tenant.
"""

from __future__ import annotations

from dataclasses import replace

import structlog

from src.challengehub.challenges.analytics import challenge_analytics
from src.challengehub.challenges.repository import ChallengeRepository
from src.challengehub.challenges.rules import (
    calculate_progress,
    challenge_status,
    is_ended,
    validate_checkin,
    validate_proof,
)
from src.challengehub.challenges.schemas import (
    ChallengeAnalytics,
    ChallengeRead,
    CheckinCreate,
    CheckinRead,
    EnrollmentRead,
    LeaderboardEntry,
    ProgressRead,
    ProofCreate,
    ProofRead,
    WinnerRead,
    WinnerSelectionMode,
    WinnerSelectRequest,
)
from src.challengehub.challenges.winners import (
    NotEnoughParticipantsError,
    Participant,
    WinnerConfig,
    WinnerResult,
    score_participants,
    select_winners,
)
from src.challengehub.core.scoping import TenantScope
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.notifications.repository import NotificationRepository
from src.challengehub.notifications.schemas import BroadcastCreate, NotificationCreate, NotificationType
from src.challengehub.tenancy.repository import TenantRepository

logger = structlog.get_logger(__name__)


class ChallengeError(Exception):
    """Base class for participation errors surfaced to the caller."""


class ChallengeNotFoundError(ChallengeError):
    pass


class NotEnrolledError(ChallengeError):
    pass


class ChallengeFullError(ChallengeError):
    pass


class PaymentRequiredError(ChallengeError):
    pass


class RuleViolationError(ChallengeError):
    pass


class ChallengeService:
    """Participation, progress, ranking and winner selection."""

    def __init__(
        self,
        challenges: ChallengeRepository,
        tenants: TenantRepository,
        notifications: NotificationRepository,
    ) -> None:
        self._challenges = challenges
        self._tenants = tenants
        self._notifications = notifications

    async def get(self, scope: TenantScope, challenge_id: str) -> ChallengeRead:
        challenge = await self._challenges.get_challenge(scope, challenge_id)
        if challenge is None:
            raise ChallengeNotFoundError(f"Challenge {challenge_id} not found")
        return challenge

    async def _enrollment(self, ctx: IdentityContext, challenge_id: str) -> EnrollmentRead:
        enrollment = await self._challenges.get_enrollment(ctx.scope, challenge_id, ctx.user_id)
        if enrollment is None:
            raise NotEnrolledError("Join the challenge first")
        return enrollment

    # ── Participation ───────────────────────────────────────────────────────

    async def join(self, ctx: IdentityContext, challenge_id: str) -> EnrollmentRead:
        """Enroll the caller in a free challenge. Joining twice is a no-op."""
        challenge = await self.get(ctx.scope, challenge_id)

        existing = await self._challenges.get_enrollment(ctx.scope, challenge_id, ctx.user_id)
        if existing is not None:
            return existing

        if is_ended(challenge):
            raise RuleViolationError("Challenge has already ended")
        if challenge.entry_price_cents > 0:
            raise PaymentRequiredError("This challenge requires payment to join")
        max_participants = challenge.max_participants
        if max_participants is not None and challenge.participant_count >= max_participants:
            raise ChallengeFullError("Challenge is full")

        enrollment = await self._challenges.create_enrollment(ctx.scope, challenge_id, ctx.user_id)
        logger.info(
            "challenge.joined",
            challenge_id=challenge_id,
            user_id=ctx.user_id,
        )
        return enrollment

    async def checkin(self, ctx: IdentityContext, challenge_id: str, data: CheckinCreate) -> CheckinRead:
        challenge = await self.get(ctx.scope, challenge_id)
        enrollment = await self._enrollment(ctx, challenge_id)
        existing = await self._challenges.list_checkins(ctx.scope, [enrollment.id])

        verdict = validate_checkin(challenge, existing)
        if not verdict.allowed:
            raise RuleViolationError(verdict.reason)
        return await self._challenges.save_checkin(ctx.scope, enrollment.id, data, replaces=verdict.replaces)

    async def submit_proof(self, ctx: IdentityContext, challenge_id: str, data: ProofCreate) -> ProofRead:
        challenge = await self.get(ctx.scope, challenge_id)
        enrollment = await self._enrollment(ctx, challenge_id)
        existing = await self._challenges.list_proofs(ctx.scope, [enrollment.id])

        verdict = validate_proof(challenge, existing)
        if not verdict.allowed:
            raise RuleViolationError(verdict.reason)
        return await self._challenges.add_proof(ctx.scope, enrollment.id, data, replaces=verdict.replaces)

    async def progress(self, ctx: IdentityContext, challenge_id: str) -> ProgressRead:
        challenge = await self.get(ctx.scope, challenge_id)
        enrollment = await self._enrollment(ctx, challenge_id)
        checkins = await self._challenges.list_checkins(ctx.scope, [enrollment.id])
        proofs = await self._challenges.list_proofs(ctx.scope, [enrollment.id], active_only=True)

        total, completed, percentage = calculate_progress(challenge, checkins, proofs)
        return ProgressRead(
            challenge_id=challenge.id,
            status=challenge_status(challenge),
            total_days=total,
            completed_days=completed,
            progress_percentage=percentage,
            checkins=len(checkins),
            active_proofs=len(proofs),
        )

    # ── Ranking ─────────────────────────────────────────────────────────────

    async def _participants(self, scope: TenantScope, challenge_id: str) -> list[Participant]:
        enrollments = await self._challenges.list_enrollments(scope, challenge_id)
        if not enrollments:
            return []
        proofs = await self._challenges.list_proofs(scope, [e.id for e in enrollments], active_only=True)
        users = {u.id: u for u in await self._tenants.list_users(scope, [e.user_id for e in enrollments])}

        by_enrollment: dict[str, list] = {e.id: [] for e in enrollments}
        for proof in proofs:
            by_enrollment.setdefault(proof.enrollment_id, []).append(proof)

        participants = []
        for enrollment in enrollments:
            user = users.get(enrollment.user_id)
            participants.append(
                Participant(
                    user_id=enrollment.user_id,
                    proofs=tuple(by_enrollment.get(enrollment.id, [])),
                    whop_user_id=user.whop_user_id if user else None,
                    name=user.name if user else None,
                )
            )
        return participants

    async def leaderboard(self, scope: TenantScope, challenge_id: str) -> list[LeaderboardEntry]:
        await self.get(scope, challenge_id)
        scored = score_participants(await self._participants(scope, challenge_id))
        return [
            LeaderboardEntry(
                rank=index + 1,
                user_id=entry.participant.user_id,
                whop_user_id=entry.participant.whop_user_id,
                name=entry.participant.name,
                score=entry.score,
                proofs_count=entry.proofs_count,
                base_score=entry.base_score,
                consistency_bonus=entry.consistency_bonus,
                recent_activity_bonus=entry.recent_activity_bonus,
            )
            for index, entry in enumerate(scored)
        ]

    async def choose_winners(
        self, scope: TenantScope, challenge_id: str, request: WinnerSelectRequest
    ) -> list[WinnerRead]:
        """Persist the winner list and notify each winner in-app.

        Auto mode ranks participants by engagement score. Manual mode takes
        the admin's picks, which must all be enrolled in the challenge.

        Raises:
            ChallengeNotFoundError: Unknown challenge (or another tenant's).
            RuleViolationError: Not enough ranked participants, or a manual
                pick is not enrolled.
        """
        challenge = await self.get(scope, challenge_id)
        participants = await self._participants(scope, challenge_id)
        scored = score_participants(participants)

        if request.mode == WinnerSelectionMode.AUTO:
            rewards = sorted(challenge.rules.get("rewards") or [], key=lambda r: r["place"])
            config = WinnerConfig(max_winners=request.max_winners)
            if rewards:
                config = replace(config, reward_titles=tuple(r["title"] for r in rewards))
            try:
                results = select_winners(scored, config)
            except NotEnoughParticipantsError as exc:
                raise RuleViolationError(str(exc)) from exc
        else:
            enrolled = {p.user_id for p in participants}
            scores = {s.participant.user_id: s.score for s in scored}
            results = []
            for pick in sorted(request.winners, key=lambda w: w.place):
                if pick.user_id not in enrolled:
                    raise RuleViolationError(f"User {pick.user_id} is not enrolled in this challenge")
                title = pick.title or f"Place {pick.place}"
                results.append(
                    WinnerResult(
                        place=pick.place,
                        user_id=pick.user_id,
                        score=scores.get(pick.user_id, 0),
                        title=title,
                        description=pick.description or f"Winner of place {pick.place}",
                        selection_reason="Selected manually by an admin",
                    )
                )

        winners = await self._challenges.replace_winners(scope, challenge_id, results)
        await self._notifications.create_many(
            scope,
            [
                NotificationCreate(
                    user_id=w.user_id,
                    challenge_id=challenge_id,
                    type=NotificationType.WINNER_ANNOUNCEMENT,
                    title=f"You won {w.title} in {challenge.title}!",
                    message=w.description or f"Congratulations on place {w.place}.",
                    metadata={"place": w.place, "score": w.score},
                )
                for w in winners
            ],
        )
        logger.info(
            "challenge.winners_selected",
            challenge_id=challenge_id,
            mode=request.mode.value,
            winners=len(winners),
        )
        return winners

    # ── Admin reporting ─────────────────────────────────────────────────────

    async def analytics(self, scope: TenantScope, challenge_id: str) -> ChallengeAnalytics:
        challenge = await self.get(scope, challenge_id)
        enrollments = await self._challenges.list_enrollments(scope, challenge_id)
        ids = [e.id for e in enrollments]
        checkins = await self._challenges.list_checkins(scope, ids)
        proofs = await self._challenges.list_proofs(scope, ids)
        return challenge_analytics(challenge, enrollments, checkins, proofs)

    async def notify_participants(
        self, scope: TenantScope, challenge_id: str, data: BroadcastCreate, sender_id: str | None = None
    ) -> int:
        """Send an in-app challenge update to everyone enrolled; returns how many were sent."""
        challenge = await self.get(scope, challenge_id)
        enrollments = await self._challenges.list_enrollments(scope, challenge_id)
        created = await self._notifications.create_many(
            scope,
            [
                NotificationCreate(
                    user_id=e.user_id,
                    challenge_id=challenge.id,
                    type=NotificationType.CHALLENGE_UPDATE,
                    title=data.title,
                    message=data.message,
                    metadata={"source": "admin_broadcast", "sender_id": sender_id},
                )
                for e in enrollments
            ],
        )
        logger.info(
            "challenge.participants_notified",
            challenge_id=challenge_id,
            notified=len(created),
        )
        return len(created)
