"""In-app notification endpoints for the calling user."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from src.challengehub.api.deps import get_identity_context
from src.challengehub.core.tenant import IdentityContext
from src.challengehub.notifications.repository import NotificationRepository
from src.challengehub.notifications.schemas import NotificationRead

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


class MarkReadRequest(BaseModel):
    """Notification ids to mark as read; omit to mark all."""

    notification_ids: list[str] | None = None


class MarkReadResponse(BaseModel):
    updated: int


def _get_notification_repository(request: Request) -> NotificationRepository:
    repo = getattr(request.app.state, "notification_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notifications not initialized",
        )
    return repo


@router.get("", response_model=list[NotificationRead])
async def list_notifications(
    request: Request,
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    ctx: IdentityContext = Depends(get_identity_context),
) -> list[NotificationRead]:
    repo = _get_notification_repository(request)
    return await repo.list_for_user(ctx.scope, ctx.user_id, unread_only=unread_only, limit=limit)


@router.post("/read", response_model=MarkReadResponse)
async def mark_read(
    body: MarkReadRequest,
    request: Request,
    ctx: IdentityContext = Depends(get_identity_context),
) -> MarkReadResponse:
    repo = _get_notification_repository(request)
    updated = await repo.mark_read(ctx.scope, ctx.user_id, body.notification_ids)
    return MarkReadResponse(updated=updated)
