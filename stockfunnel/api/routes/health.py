"""Health check endpoints."""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from sqlalchemy import text

from stockfunnel.api.schemas import HealthResponse
from stockfunnel.core.config import settings
from stockfunnel.core.logging import get_logger


router = APIRouter(prefix="/health")

logger = get_logger("health")


async def db_healthcheck() -> bool:
    """Check PostgreSQL database health."""
    from stockfunnel.database.connection import get_engine

    try:
        engine = await get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database healthcheck failed: {e}")
        return False


@router.get(
    "",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the API and its dependencies.",
)
async def health_check() -> HealthResponse:
    checks = {
        "database": await db_healthcheck(),
        "openai": settings.has_openai,
    }
    return HealthResponse(
        status="healthy" if checks["database"] else "unhealthy",
        version=settings.app_version,
        timestamp=datetime.now(UTC),
        checks=checks,
    )
