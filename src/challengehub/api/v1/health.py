"""Health check endpoints.

/health is liveness only. /health/ready checks the database and, when the
tenant cache is enabled, Redis. A disabled cache never degrades readiness.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.challengehub.config import get_settings
from src.challengehub.core.database import get_engine
from src.challengehub.core.redis import redis_status

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _database_status() -> tuple[str, str | None]:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        return "error", str(exc)
    return "ok", None


@router.get("/health/ready")
async def readiness_check():
    """Return 200 when every enabled dependency answers, 503 otherwise."""
    checks: dict[str, str] = {}
    for name, (state, error) in (
        ("database", await _database_status()),
        ("tenant_cache", await redis_status(get_settings())),
    ):
        checks[name] = state
        if error:
            checks[f"{name}_error"] = error

    ready = checks["database"] == "ok" and checks["tenant_cache"] in ("ok", "disabled")
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
