"""Monthly usage repository.

reserve_slot() is a single conditional upsert: two admins creating the last
allowed challenge of the month at the same time cannot both get a slot.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.billing.models import MonthlyUsageModel
from src.challengehub.billing.schemas import MonthlyUsageRead
from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp


class UsageRepository:
    """Async persistence for per-month challenge counters.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_usage(self, scope: TenantScope, month: str) -> MonthlyUsageRead:
        async for session in self._session_factory():
            stmt = select(MonthlyUsageModel.challenges_created).where(
                *scope_clauses(MonthlyUsageModel, scope),
                MonthlyUsageModel.month == month,
            )
            result = await session.execute(stmt)
            count = result.scalar_one_or_none()
            return MonthlyUsageRead(tenant_id=scope.tenant_id, month=month, challenges_created=count or 0)

    async def reserve_slot(self, scope: TenantScope, month: str, limit: int | None) -> int | None:
        """Count one more challenge for ``month`` unless ``limit`` is reached.

        Returns:
            The new count, or None when the month was already at the limit.
        """
        if limit is not None and limit <= 0:
            return None
        async for session in self._session_factory():
            stmt = (
                pg_insert(MonthlyUsageModel)
                .values(**stamp(scope), month=month, challenges_created=1)
                .on_conflict_do_update(
                    constraint="uq_monthly_usage_tenant_month",
                    set_={"challenges_created": MonthlyUsageModel.challenges_created + 1},
                    where=(MonthlyUsageModel.challenges_created < limit) if limit is not None else None,
                )
                .returning(MonthlyUsageModel.challenges_created)
            )
            result = await session.execute(stmt)
            count = result.scalar_one_or_none()
            await session.commit()
            return count

    async def release_slot(self, scope: TenantScope, month: str) -> None:
        """Give back a slot whose challenge was never created."""
        async for session in self._session_factory():
            stmt = (
                update(MonthlyUsageModel)
                .where(
                    *scope_clauses(MonthlyUsageModel, scope),
                    MonthlyUsageModel.month == month,
                    MonthlyUsageModel.challenges_created > 0,
                )
                .values(
                    challenges_created=MonthlyUsageModel.challenges_created - 1,
                    updated_at=func.now(),
                )
            )
            await session.execute(stmt)
            await session.commit()
