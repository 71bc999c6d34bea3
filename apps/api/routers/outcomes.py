"""Outcome settlement router: closes the loop from real results back into learning."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.outcome_recorder import settle_mutation_event_service

router = APIRouter()


class SettleOutcomeRequest(BaseModel):
    event_id: str
    outcome_metrics: Dict[str, Any]
    rank_after: Optional[int] = None
    outcome_class: Optional[str] = None
    user_id: Optional[str] = None


@router.post("/settle")
async def settle_outcome(
    request: SettleOutcomeRequest,
    _rate_limit: None = Depends(rate_limit("outcome_settle", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await settle_mutation_event_service(
        user_id=scoped_user_id,
        event_id=request.event_id,
        payload=request.model_dump(exclude_none=True),
        db=db,
    )
