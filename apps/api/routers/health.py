"""
Health check endpoints.
"""

import os
import shutil

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings

router = APIRouter()


async def _database_state() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return f"down: {e}"
    return "up"


async def _redis_state() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as e:
        return f"down: {e}"
    finally:
        await client.aclose()
    return "up"


def _missing_requirements() -> list:
    missing = []
    if not shutil.which("ffmpeg"):
        missing.append("ffmpeg")
    if not os.access(settings.MEDIA_ROOT, os.W_OK):
        missing.append("MEDIA_ROOT")
    if settings.ENABLE_AUDIO_SCREENING and not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")
    return missing


@router.get("/health")
async def health_check(request: Request):
    """
    Component health plus pipeline load.
    Redis only backs upload quotas, so its outage does not degrade the API.
    """
    orchestrator = request.app.state.orchestrator
    database = await _database_state()
    missing = _missing_requirements()
    return {
        "status": "healthy" if database == "up" and not missing else "degraded",
        "database": database,
        "redis": await _redis_state(),
        "missing": missing,
        "pipeline": {
            "active_runs": len(orchestrator.active_video_ids()),
            "live_subscribers": orchestrator.broadcaster.connected_count,
        },
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = _missing_requirements()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
