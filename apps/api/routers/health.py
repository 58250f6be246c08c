"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings
from multimodal.vision import get_openai_client

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Database and Redis reachability plus which providers are configured.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "ai_provider": "configured" if get_openai_client(settings.OPENAI_API_KEY) else "fallback",
        "paypal": "configured" if settings.PAYPAL_CLIENT_ID and settings.PAYPAL_CLIENT_SECRET else "missing",
        "polar": "configured" if settings.POLAR_ACCESS_TOKEN else "missing",
    }

    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only matters when analyses go through the queue
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.BACKGROUND_ANALYSIS_MODE == "queue":
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    if settings.ENVIRONMENT == "production" and not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")

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
