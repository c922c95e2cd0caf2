"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.challengehub.api.v1 import admin, auth, challenges, health, notifications, payments, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(auth.router)
router.include_router(challenges.router)
router.include_router(admin.router)
router.include_router(payments.router)
router.include_router(webhooks.router)
router.include_router(notifications.router)
