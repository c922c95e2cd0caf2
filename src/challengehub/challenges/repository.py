"""Challenge repository -- tenant-scoped async CRUD for challenges and participation.

Provides ChallengeRepository with the session_factory callable pattern. Every
method takes a TenantScope first and filters with scope_clauses() on every
table it reads, including child tables reached through an id from the URL,
so a challenge or enrollment id belonging to another tenant behaves exactly
like an unknown id. Inserts stamp tenant_id and whop_company_id from the
scope.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.challenges.models import (
    ChallengeModel,
    ChallengeWinnerModel,
    CheckinModel,
    EnrollmentModel,
    ProofModel,
)
from src.challengehub.challenges.schemas import (
    ChallengeCreate,
    ChallengeRead,
    ChallengeUpdate,
    CheckinCreate,
    CheckinRead,
    EnrollmentRead,
    ProofCreate,
    ProofRead,
    WinnerRead,
)
from src.challengehub.challenges.winners import WinnerResult
from src.challengehub.core.database import is_unique_violation
from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp

logger = structlog.get_logger(__name__)

_RULE_FIELDS = ("max_participants", "rewards", "policy")


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(value)
    except (ValueError, TypeError):
        return None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_challenge(model: ChallengeModel, participant_count: int = 0) -> ChallengeRead:
    return ChallengeRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        whop_company_id=model.whop_company_id,
        whop_experience_id=model.whop_experience_id,
        creator_id=str(model.creator_id) if model.creator_id else None,
        title=model.title,
        description=model.description or "",
        image_url=model.image_url,
        category=model.category,
        proof_type=model.proof_type,
        cadence=model.cadence,
        start_at=model.start_at,
        end_at=model.end_at,
        rules=model.rules or {},
        entry_price_cents=model.entry_price_cents or 0,
        currency=model.currency,
        participant_count=participant_count,
        created_at=model.created_at,
    )


def _model_to_enrollment(model: EnrollmentModel) -> EnrollmentRead:
    return EnrollmentRead(
        id=str(model.id),
        challenge_id=str(model.challenge_id),
        user_id=str(model.user_id),
        source=model.source,
        joined_at=model.joined_at,
    )


def _model_to_checkin(model: CheckinModel) -> CheckinRead:
    return CheckinRead(
        id=str(model.id),
        enrollment_id=str(model.enrollment_id),
        content=model.content,
        image_url=model.image_url,
        link_url=model.link_url,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_proof(model: ProofModel) -> ProofRead:
    return ProofRead(
        id=str(model.id),
        enrollment_id=str(model.enrollment_id),
        type=model.type,
        url=model.url,
        content=model.content,
        version=model.version,
        is_active=model.is_active,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_winner(model: ChallengeWinnerModel) -> WinnerRead:
    return WinnerRead(
        id=str(model.id),
        challenge_id=str(model.challenge_id),
        user_id=str(model.user_id),
        place=model.place,
        title=model.title,
        description=model.description,
        score=model.score,
        selection_reason=model.selection_reason,
        created_at=model.created_at,
    )


class ChallengeRepository:
    """Tenant-scoped persistence for challenges and everything hanging off them.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Challenges ──────────────────────────────────────────────────────────

    async def _participant_counts(
        self, session: AsyncSession, scope: TenantScope, challenge_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, int]:
        ids = list(challenge_ids)
        if not ids:
            return {}
        stmt = (
            select(EnrollmentModel.challenge_id, func.count(EnrollmentModel.id))
            .where(*scope_clauses(EnrollmentModel, scope), EnrollmentModel.challenge_id.in_(ids))
            .group_by(EnrollmentModel.challenge_id)
        )
        result = await session.execute(stmt)
        return {row[0]: row[1] for row in result.all()}

    async def list_challenges(
        self, scope: TenantScope, whop_experience_id: str | None = None
    ) -> list[ChallengeRead]:
        """List the tenant's challenges, newest first.

        When an experience id is given, challenges bound to that experience and
        challenges bound to no experience are returned.
        """
        async for session in self._session_factory():
            stmt = select(ChallengeModel).where(*scope_clauses(ChallengeModel, scope))
            if whop_experience_id:
                stmt = stmt.where(
                    (ChallengeModel.whop_experience_id == whop_experience_id)
                    | (ChallengeModel.whop_experience_id.is_(None))
                )
            stmt = stmt.order_by(ChallengeModel.created_at.desc())
            result = await session.execute(stmt)
            models = result.scalars().all()
            counts = await self._participant_counts(session, scope, (m.id for m in models))
            return [_model_to_challenge(m, counts.get(m.id, 0)) for m in models]

    async def get_challenge(self, scope: TenantScope, challenge_id: str) -> ChallengeRead | None:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(ChallengeModel).where(
                *scope_clauses(ChallengeModel, scope),
                ChallengeModel.id == challenge_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            counts = await self._participant_counts(session, scope, [model.id])
            return _model_to_challenge(model, counts.get(model.id, 0))

    async def create_challenge(
        self, scope: TenantScope, creator_id: str | None, data: ChallengeCreate
    ) -> ChallengeRead:
        async for session in self._session_factory():
            model = ChallengeModel(
                **stamp(scope),
                whop_experience_id=data.whop_experience_id,
                creator_id=uuid.UUID(creator_id) if creator_id else None,
                title=data.title,
                description=data.description,
                image_url=data.image_url,
                category=data.category,
                proof_type=data.proof_type.value,
                cadence=data.cadence.value,
                start_at=data.start_at,
                end_at=data.end_at,
                rules=data.rules_document(),
                entry_price_cents=data.entry_price_cents,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            logger.info(
                "challenge.created",
                tenant_id=scope.tenant_id,
                challenge_id=str(model.id),
            )
            return _model_to_challenge(model)

    async def update_challenge(
        self, scope: TenantScope, challenge_id: str, data: ChallengeUpdate
    ) -> ChallengeRead | None:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(ChallengeModel).where(
                *scope_clauses(ChallengeModel, scope),
                ChallengeModel.id == challenge_uuid,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None

            changes = data.model_dump(exclude_unset=True, mode="json")
            rules = dict(model.rules or {})
            for key in _RULE_FIELDS:
                if key in changes:
                    rules[key] = changes.pop(key)
            model.rules = rules
            for key in ("start_at", "end_at"):
                if key in changes:
                    changes[key] = getattr(data, key)
            for key, value in changes.items():
                setattr(model, key, value)

            await session.commit()
            await session.refresh(model)
            counts = await self._participant_counts(session, scope, [model.id])
            return _model_to_challenge(model, counts.get(model.id, 0))

    async def delete_challenge(self, scope: TenantScope, challenge_id: str) -> bool:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return False
        async for session in self._session_factory():
            stmt = delete(ChallengeModel).where(
                *scope_clauses(ChallengeModel, scope),
                ChallengeModel.id == challenge_uuid,
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

    async def duplicate_challenge(
        self, scope: TenantScope, challenge_id: str, creator_id: str | None
    ) -> ChallengeRead | None:
        """Copy a challenge as "<title> (Copy)", starting in one week for one week."""
        original = await self.get_challenge(scope, challenge_id)
        if original is None:
            return None
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            model = ChallengeModel(
                **stamp(scope),
                whop_experience_id=original.whop_experience_id,
                creator_id=uuid.UUID(creator_id) if creator_id else None,
                title=f"{original.title} (Copy)"[:200],
                description=original.description,
                image_url=original.image_url,
                category=original.category,
                proof_type=original.proof_type.value,
                cadence=original.cadence.value,
                start_at=now + timedelta(days=7),
                end_at=now + timedelta(days=14),
                rules=dict(original.rules),
                entry_price_cents=original.entry_price_cents,
                currency=original.currency,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_challenge(model)

    # ── Enrollments ─────────────────────────────────────────────────────────

    async def get_enrollment(
        self, scope: TenantScope, challenge_id: str, user_id: str
    ) -> EnrollmentRead | None:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return None
        async for session in self._session_factory():
            stmt = select(EnrollmentModel).where(
                *scope_clauses(EnrollmentModel, scope),
                EnrollmentModel.challenge_id == challenge_uuid,
                EnrollmentModel.user_id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_enrollment(model) if model is not None else None

    async def create_enrollment(
        self, scope: TenantScope, challenge_id: str, user_id: str, source: str = "free"
    ) -> EnrollmentRead:
        """Enroll a user. Joining twice returns the existing enrollment."""
        async for session in self._session_factory():
            model = EnrollmentModel(
                **stamp(scope),
                challenge_id=uuid.UUID(challenge_id),
                user_id=uuid.UUID(user_id),
                source=source,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not is_unique_violation(exc):
                    raise
                existing = await self.get_enrollment(scope, challenge_id, user_id)
                if existing is None:
                    raise
                return existing
            await session.refresh(model)
            return _model_to_enrollment(model)

    async def list_enrollments(self, scope: TenantScope, challenge_id: str) -> list[EnrollmentRead]:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return []
        async for session in self._session_factory():
            stmt = (
                select(EnrollmentModel)
                .where(
                    *scope_clauses(EnrollmentModel, scope),
                    EnrollmentModel.challenge_id == challenge_uuid,
                )
                .order_by(EnrollmentModel.joined_at)
            )
            result = await session.execute(stmt)
            return [_model_to_enrollment(m) for m in result.scalars().all()]

    # ── Check-ins ───────────────────────────────────────────────────────────

    async def list_checkins(self, scope: TenantScope, enrollment_ids: Iterable[str]) -> list[CheckinRead]:
        ids = [uuid.UUID(e) for e in enrollment_ids]
        if not ids:
            return []
        async for session in self._session_factory():
            stmt = (
                select(CheckinModel)
                .where(
                    *scope_clauses(CheckinModel, scope),
                    CheckinModel.enrollment_id.in_(ids),
                )
                .order_by(CheckinModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return [_model_to_checkin(m) for m in result.scalars().all()]

    async def save_checkin(
        self,
        scope: TenantScope,
        enrollment_id: str,
        data: CheckinCreate,
        replaces: str | None = None,
    ) -> CheckinRead:
        """Insert a check-in, or overwrite ``replaces`` in place."""
        async for session in self._session_factory():
            model: CheckinModel | None = None
            if replaces:
                stmt = select(CheckinModel).where(
                    *scope_clauses(CheckinModel, scope),
                    CheckinModel.id == uuid.UUID(replaces),
                    CheckinModel.enrollment_id == uuid.UUID(enrollment_id),
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
            if model is None:
                model = CheckinModel(**stamp(scope), enrollment_id=uuid.UUID(enrollment_id))
                session.add(model)
            model.content = data.content
            model.image_url = data.image_url
            model.link_url = data.link_url
            await session.commit()
            await session.refresh(model)
            return _model_to_checkin(model)

    # ── Proofs ──────────────────────────────────────────────────────────────

    async def list_proofs(
        self, scope: TenantScope, enrollment_ids: Iterable[str], active_only: bool = False
    ) -> list[ProofRead]:
        ids = [uuid.UUID(e) for e in enrollment_ids]
        if not ids:
            return []
        async for session in self._session_factory():
            stmt = select(ProofModel).where(
                *scope_clauses(ProofModel, scope),
                ProofModel.enrollment_id.in_(ids),
            )
            if active_only:
                stmt = stmt.where(ProofModel.is_active.is_(True))
            stmt = stmt.order_by(ProofModel.created_at.desc())
            result = await session.execute(stmt)
            return [_model_to_proof(m) for m in result.scalars().all()]

    async def add_proof(
        self,
        scope: TenantScope,
        enrollment_id: str,
        data: ProofCreate,
        replaces: str | None = None,
    ) -> ProofRead:
        """Insert a new proof version, deactivating ``replaces`` in the same transaction."""
        async for session in self._session_factory():
            version = 1
            if replaces:
                stmt = select(ProofModel).where(
                    *scope_clauses(ProofModel, scope),
                    ProofModel.id == uuid.UUID(replaces),
                    ProofModel.enrollment_id == uuid.UUID(enrollment_id),
                )
                result = await session.execute(stmt)
                previous = result.scalar_one_or_none()
                if previous is not None:
                    previous.is_active = False
                    version = previous.version + 1
            model = ProofModel(
                **stamp(scope),
                enrollment_id=uuid.UUID(enrollment_id),
                type=data.type.value,
                url=data.url,
                content=data.content,
                version=version,
                is_active=True,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_proof(model)

    # ── Winners ─────────────────────────────────────────────────────────────

    async def replace_winners(
        self, scope: TenantScope, challenge_id: str, winners: list[WinnerResult]
    ) -> list[WinnerRead]:
        """Replace the challenge's winner list in one transaction."""
        challenge_uuid = uuid.UUID(challenge_id)
        async for session in self._session_factory():
            await session.execute(
                delete(ChallengeWinnerModel).where(
                    *scope_clauses(ChallengeWinnerModel, scope),
                    ChallengeWinnerModel.challenge_id == challenge_uuid,
                )
            )
            models = [
                ChallengeWinnerModel(
                    **stamp(scope),
                    challenge_id=challenge_uuid,
                    user_id=uuid.UUID(w.user_id),
                    place=w.place,
                    title=w.title,
                    description=w.description,
                    score=float(w.score),
                    selection_reason=w.selection_reason,
                )
                for w in winners
            ]
            session.add_all(models)
            await session.commit()
            for model in models:
                await session.refresh(model)
            return [_model_to_winner(m) for m in sorted(models, key=lambda m: m.place)]

    async def list_winners(self, scope: TenantScope, challenge_id: str) -> list[WinnerRead]:
        challenge_uuid = _parse_uuid(challenge_id)
        if challenge_uuid is None:
            return []
        async for session in self._session_factory():
            stmt = (
                select(ChallengeWinnerModel)
                .where(
                    *scope_clauses(ChallengeWinnerModel, scope),
                    ChallengeWinnerModel.challenge_id == challenge_uuid,
                )
                .order_by(ChallengeWinnerModel.place)
            )
            result = await session.execute(stmt)
            return [_model_to_winner(m) for m in result.scalars().all()]
