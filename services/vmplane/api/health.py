"""
Health check endpoints for the vmplane API server.

Provides /health (liveness) and /ready (readiness) endpoints.
"""

from fastapi import APIRouter, Response, status

from vmplane.db.session import get_db_health
from vmplane.logging_config import get_logger
from vmplane.redis.client import get_redis_health

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict[str, str | dict[str, str]]:
    """Readiness probe endpoint.

    The API needs the database for VM records and Redis for job submission.
    """
    checks = {
        "database": "healthy" if await get_db_health() else "unhealthy",
        "redis": "healthy" if await get_redis_health() else "unhealthy",
    }

    if not all(v == "healthy" for v in checks.values()):
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
