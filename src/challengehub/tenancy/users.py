"""Tenant-local user provisioning."""

from __future__ import annotations

import structlog

from src.challengehub.core.scoping import TenantScope
from src.challengehub.tenancy.repository import TenantRepository, UserConflictError
from src.challengehub.tenancy.schemas import TenantRead, UserRead

logger = structlog.get_logger(__name__)


class UserProvisioner:
    """Create or refresh the local user row for a caller.

    The user's whop_company_id always comes from the tenant row, never from
    request headers, so a user can't end up pointing at a tenant of another
    company.
    """

    def __init__(self, repository: TenantRepository) -> None:
        self._repository = repository

    async def get_user(self, tenant: TenantRead, whop_user_id: str) -> UserRead | None:
        return await self._repository.get_user(_scope_of(tenant), whop_user_id)

    async def ensure_user(
        self,
        tenant: TenantRead,
        whop_user_id: str,
        role: str,
        whop_experience_id: str | None = None,
        existing: UserRead | None = None,
    ) -> UserRead:
        scope = _scope_of(tenant)
        user = existing if existing is not None else await self._repository.get_user(scope, whop_user_id)

        if user is None:
            try:
                user = await self._repository.create_user(
                    scope, whop_user_id, role=role, whop_experience_id=whop_experience_id
                )
            except UserConflictError:
                user = await self._repository.get_user(scope, whop_user_id)
                if user is None:
                    raise
            else:
                logger.info(
                    "user.provisioned",
                    tenant_id=tenant.id,
                    whop_user_id=whop_user_id,
                    role=role,
                )
                return user

        if user.role == role and (not whop_experience_id or user.whop_experience_id == whop_experience_id):
            return user

        updated = await self._repository.update_user(
            scope, user.id, role=role, whop_experience_id=whop_experience_id
        )
        if updated is not None and updated.role != user.role:
            logger.info(
                "user.role_changed",
                tenant_id=tenant.id,
                whop_user_id=whop_user_id,
                old_role=user.role,
                new_role=role,
            )
        return updated or user


def _scope_of(tenant: TenantRead) -> TenantScope:
    if not tenant.whop_company_id:
        raise ValueError(f"Tenant {tenant.id} has no company id")
    return TenantScope(tenant_id=tenant.id, whop_company_id=tenant.whop_company_id)
