"""Health check endpoints.

Provides liveness (/api/v1/health) and readiness (/api/v1/health/ready).
Readiness reports database and Redis connectivity plus whether the GHL
marketplace app is configured.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.vetsync.config import get_settings
from src.vetsync.core.database import get_engine
from src.vetsync.core.redis import get_redis_pool

router = APIRouter(prefix="/api/v1", tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        if not await redis.ping():
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    checks["ghl"] = "configured" if get_settings().ghl_oauth_configured() else "not_configured"
    return checks


@router.get("/health/ready")
async def readiness_check():
    """Returns 200 if the database and Redis are reachable, 503 otherwise.

    An unconfigured GHL app does not fail readiness; the GHL endpoints
    report it themselves.
    """
    checks = await _check_dependencies()
    all_healthy = checks["database"] == "ok" and checks["redis"] == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
