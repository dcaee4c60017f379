"""
Health check endpoints.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import engine

router = APIRouter()
logger = logging.getLogger(__name__)


async def _database_status() -> str:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database health probe failed: %s", e)
        return f"down: {str(e)}"


async def _redis_status() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return "up"
    except (RedisError, OSError) as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    The credit store is required; Redis only backs the flood guard, so losing it degrades.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "image_provider": "configured" if settings.IMAGE_PROVIDER_URL else "missing",
        "stripe_webhooks": "configured" if settings.STRIPE_WEBHOOK_SECRET else "missing",
    }
    if health_status["database"] != "up":
        health_status["status"] = "unhealthy"
    elif health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if not settings.IMAGE_PROVIDER_URL:
        missing.append("IMAGE_PROVIDER_URL")
    database = await _database_status()
    if database != "up":
        missing.append("DATABASE")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
