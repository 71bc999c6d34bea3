"""Regret ledger router: manual entries and decayed-severity lookups."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.mutation_types import RegretContext
from services.regret_ledger import get_decayed_severity_service, record_regret_service

router = APIRouter()


class RecordRegretRequest(BaseModel):
    tier: int = Field(ge=1, le=3)
    severity: float = Field(gt=0, le=1)
    style_cluster: str
    platform: str
    creative_id: Optional[str] = None
    outcome_type: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


@router.post("")
async def record_regret(
    request: RecordRegretRequest,
    _rate_limit: None = Depends(rate_limit("regret_record", limit=300, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user_record(db, auth)
    return await record_regret_service(
        user_id=scoped_user_id,
        tier=request.tier,
        severity=request.severity,
        context=RegretContext.of(request.style_cluster, request.platform),
        db=db,
        creative_id=request.creative_id,
        outcome_type=request.outcome_type,
        extra_context=request.context,
    )


@router.get("/severity")
async def regret_severity(
    style_cluster: str = Query(...),
    platform: str = Query(...),
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_decayed_severity_service(
        user_id=scoped_user_id,
        context=RegretContext.of(style_cluster, platform),
        db=db,
    )
