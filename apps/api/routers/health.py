"""
Health probes.

/health reports dependency status alongside the engine's feature flags;
/health/ready fails when the drift threshold overrides cannot be parsed.
"""

from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from services.drift_detector import ThresholdTable

router = APIRouter()


async def _probe_database() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return f"down: {exc}"
    return "up"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


def _flag(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"


@router.get("/health")
async def health_check() -> Dict[str, str]:
    status = {
        "status": "healthy",
        "api": "up",
        "database": await _probe_database(),
        "redis": await _probe_redis(),
        "mutation_engine": _flag(settings.MUTATION_ENGINE_ENABLED),
        "drift_check": _flag(settings.DRIFT_CHECK_ENABLED),
        "alert_webhook": "configured" if settings.SLACK_WEBHOOK_URL else "missing",
    }
    if status["database"] != "up" or status["redis"] != "up":
        status["status"] = "degraded"
    return status


@router.get("/health/ready")
async def readiness_check():
    try:
        table = ThresholdTable.from_settings()
    except ValueError as exc:
        return JSONResponse(status_code=503, content={"ready": False, "error": str(exc)})
    return {"ready": True, "threshold_sources": sorted(source.value for source in table.thresholds)}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
