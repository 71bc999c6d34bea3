"""Drift alert router: on-demand checks, queued checks and alert history."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.drift_detector import list_alerts_service, run_drift_check_service
from services.drift_queue import enqueue_drift_check_job

router = APIRouter()
logger = logging.getLogger(__name__)


def _assert_drift_check_enabled() -> None:
    if not settings.DRIFT_CHECK_ENABLED:
        raise HTTPException(status_code=503, detail="Drift checks disabled by feature flag.")


@router.post("/check")
async def check_alerts(
    _rate_limit: None = Depends(rate_limit("alerts_check", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    _assert_drift_check_enabled()
    # Each source gets its own session on the same engine as the request.
    session_maker = async_sessionmaker(db.bind, class_=AsyncSession, expire_on_commit=False)
    logger.info("drift_check_requested user=%s", auth.user_id)
    return await run_drift_check_service(session_maker=session_maker)


@router.post("/check/enqueue")
async def enqueue_alert_check(
    _rate_limit: None = Depends(rate_limit("alerts_check_enqueue", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    _assert_drift_check_enabled()
    try:
        job = enqueue_drift_check_job()
    except Exception as exc:
        logger.warning("drift_check_enqueue_failed user=%s error=%s", auth.user_id, exc)
        raise HTTPException(status_code=503, detail="Drift check queue unavailable.") from exc
    return {"queued": True, "job_id": job.id}


@router.get("")
async def list_alerts(
    severity: Optional[str] = Query(default=None),
    source: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_alerts_service(db=db, severity=severity, source=source, limit=limit)
