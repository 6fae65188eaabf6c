"""Health check endpoints.

Provides:
- Basic liveness probe (/health/)
- Dependency check (/health/ready): database and, when configured, Redis
"""

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from app.config import get_settings
from app.dependencies import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])

_start_time = time.monotonic()
_start_datetime = datetime.now(timezone.utc).isoformat()


@router.get("/", response_model=dict[str, Any])
async def root() -> dict[str, Any]:
    """
    Get API name, version and uptime.
    Used as a simple liveness probe.
    """
    settings = get_settings()
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "ok",
        "started_at": _start_datetime,
        "uptime_seconds": round(time.monotonic() - _start_time, 1),
    }


@router.get("/ready", response_model=dict[str, Any])
async def readiness(db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """
    Readiness check with dependency verification.
    Returns 503 if the database is unreachable. Redis is only checked
    when notifications go through it.
    """
    settings = get_settings()
    checks: dict[str, str] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.error("Database health check failed: %s", e)
        checks["database"] = "unavailable"

    if settings.NOTIFICATION_BACKEND == "redis":
        import redis.asyncio as aioredis

        client = aioredis.from_url(settings.REDIS_URL)
        try:
            await client.ping()
            checks["redis"] = "ok"
        except Exception as e:
            logger.warning("Redis health check failed: %s", e)
            checks["redis"] = "unavailable"
        finally:
            await client.aclose()

    if checks["database"] == "unavailable":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return {"status": "healthy", **checks}
