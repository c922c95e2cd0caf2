"""Tenant and user repository -- async lookups and inserts.

Provides TenantRepository with the session_factory callable pattern. Unique
violations on insert are surfaced as TenantConflictError / UserConflictError
so that callers can re-query and return the row a concurrent request created.

Tenant lookups are by external company id and are not scoped (resolving the
tenant is what produces the scope). User methods take a TenantScope first.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.core.database import is_unique_violation
from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp
from src.challengehub.tenancy.models import Tenant, User
from src.challengehub.tenancy.schemas import TenantRead, UserRead

logger = structlog.get_logger(__name__)


class TenantConflictError(Exception):
    """A tenant for this company id was inserted concurrently."""

    def __init__(self, whop_company_id: str) -> None:
        super().__init__(f"Tenant for company {whop_company_id} already exists")
        self.whop_company_id = whop_company_id


class UserConflictError(Exception):
    """A user row for (tenant, whop user) was inserted concurrently."""


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_tenant(model: Tenant) -> TenantRead:
    return TenantRead(
        id=str(model.id),
        name=model.name,
        whop_company_id=model.whop_company_id,
        whop_handle=model.whop_handle,
        whop_product_id=model.whop_product_id,
        created_at=model.created_at,
    )


def _model_to_user(model: User) -> UserRead:
    return UserRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        whop_company_id=model.whop_company_id,
        whop_user_id=model.whop_user_id,
        whop_experience_id=model.whop_experience_id,
        role=model.role,
        name=model.name,
        email=model.email,
        created_at=model.created_at,
    )


class TenantRepository:
    """Async persistence for tenants and tenant-local users.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Tenants ─────────────────────────────────────────────────────────────

    async def get_by_company_id(self, whop_company_id: str) -> TenantRead | None:
        async for session in self._session_factory():
            stmt = select(Tenant).where(Tenant.whop_company_id == whop_company_id)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_tenant(model) if model is not None else None

    async def create_tenant(self, name: str, whop_company_id: str) -> TenantRead:
        """Insert a tenant for a company id.

        Raises:
            TenantConflictError: Another tenant already owns the company id.
        """
        async for session in self._session_factory():
            model = Tenant(name=name, whop_company_id=whop_company_id)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if is_unique_violation(exc):
                    raise TenantConflictError(whop_company_id) from exc
                raise
            await session.refresh(model)
            return _model_to_tenant(model)

    # ── Users ───────────────────────────────────────────────────────────────

    async def get_user(self, scope: TenantScope, whop_user_id: str) -> UserRead | None:
        async for session in self._session_factory():
            stmt = select(User).where(
                *scope_clauses(User, scope),
                User.whop_user_id == whop_user_id,
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            return _model_to_user(model) if model is not None else None

    async def create_user(
        self,
        scope: TenantScope,
        whop_user_id: str,
        role: str,
        whop_experience_id: str | None = None,
    ) -> UserRead:
        """Insert a user. Both tenant ids are stamped from the scope.

        Raises:
            UserConflictError: The user already exists in this tenant.
        """
        async for session in self._session_factory():
            model = User(
                **stamp(scope),
                whop_user_id=whop_user_id,
                whop_experience_id=whop_experience_id,
                role=role,
                last_seen_at=datetime.now(timezone.utc),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if is_unique_violation(exc):
                    raise UserConflictError(whop_user_id) from exc
                raise
            await session.refresh(model)
            return _model_to_user(model)

    async def update_user(
        self,
        scope: TenantScope,
        user_id: str,
        role: str,
        whop_experience_id: str | None = None,
    ) -> UserRead | None:
        """Update role, experience id and last-seen time of an existing user."""
        async for session in self._session_factory():
            stmt = select(User).where(
                *scope_clauses(User, scope),
                User.id == uuid.UUID(user_id),
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            model.role = role
            if whop_experience_id:
                model.whop_experience_id = whop_experience_id
            model.last_seen_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_user(model)

    async def list_users(self, scope: TenantScope, user_ids: list[str] | None = None) -> list[UserRead]:
        async for session in self._session_factory():
            stmt = select(User).where(*scope_clauses(User, scope))
            if user_ids is not None:
                stmt = stmt.where(User.id.in_([uuid.UUID(u) for u in user_ids]))
            result = await session.execute(stmt)
            return [_model_to_user(m) for m in result.scalars().all()]
