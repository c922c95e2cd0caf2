"""Notification repository -- tenant- and user-scoped reads, bulk inserts."""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.challengehub.core.scoping import TenantScope, scope_clauses, stamp
from src.challengehub.notifications.models import InternalNotificationModel
from src.challengehub.notifications.schemas import NotificationCreate, NotificationRead


def _model_to_notification(model: InternalNotificationModel) -> NotificationRead:
    return NotificationRead(
        id=str(model.id),
        user_id=str(model.user_id),
        challenge_id=str(model.challenge_id) if model.challenge_id else None,
        type=model.type,
        title=model.title,
        message=model.message,
        metadata=model.metadata_json or {},
        is_read=model.is_read,
        created_at=model.created_at,
    )


class NotificationRepository:
    """Async persistence for in-app notifications.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create_many(
        self, scope: TenantScope, notifications: list[NotificationCreate]
    ) -> list[NotificationRead]:
        if not notifications:
            return []
        async for session in self._session_factory():
            models = [
                InternalNotificationModel(
                    **stamp(scope),
                    user_id=uuid.UUID(n.user_id),
                    challenge_id=uuid.UUID(n.challenge_id) if n.challenge_id else None,
                    type=n.type.value,
                    title=n.title,
                    message=n.message,
                    metadata_json=n.metadata,
                )
                for n in notifications
            ]
            session.add_all(models)
            await session.commit()
            for model in models:
                await session.refresh(model)
            return [_model_to_notification(m) for m in models]

    async def list_for_user(
        self, scope: TenantScope, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[NotificationRead]:
        async for session in self._session_factory():
            stmt = select(InternalNotificationModel).where(
                *scope_clauses(InternalNotificationModel, scope),
                InternalNotificationModel.user_id == uuid.UUID(user_id),
            )
            if unread_only:
                stmt = stmt.where(InternalNotificationModel.is_read.is_(False))
            stmt = stmt.order_by(InternalNotificationModel.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return [_model_to_notification(m) for m in result.scalars().all()]

    async def mark_read(
        self, scope: TenantScope, user_id: str, notification_ids: list[str] | None = None
    ) -> int:
        """Mark the given notifications (or all of the user's) as read.

        Returns the number of rows changed.
        """
        async for session in self._session_factory():
            stmt = (
                update(InternalNotificationModel)
                .where(
                    *scope_clauses(InternalNotificationModel, scope),
                    InternalNotificationModel.user_id == uuid.UUID(user_id),
                    InternalNotificationModel.is_read.is_(False),
                )
                .values(is_read=True)
            )
            if notification_ids is not None:
                stmt = stmt.where(
                    InternalNotificationModel.id.in_([uuid.UUID(n) for n in notification_ids])
                )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount
