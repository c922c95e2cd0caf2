"""Pydantic schemas for in-app notifications."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationType(str, Enum):
    WINNER_ANNOUNCEMENT = "winner_announcement"
    CHALLENGE_UPDATE = "challenge_update"
    GENERAL = "general"


class NotificationCreate(BaseModel):
    user_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.GENERAL
    challenge_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class NotificationRead(BaseModel):
    id: str
    user_id: str
    challenge_id: str | None = None
    type: NotificationType
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: datetime | None = None


class BroadcastCreate(BaseModel):
    """Message an admin sends to every participant of a challenge."""

    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=2000)


class BroadcastResult(BaseModel):
    challenge_id: str
    notified: int
