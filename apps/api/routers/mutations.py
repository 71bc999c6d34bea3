"""Creative mutation router: variant generation and event history."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.mutations import generate_mutations_service, list_mutation_events_service

router = APIRouter()


class RankedCreative(BaseModel):
    id: str
    platform: str
    style_cluster: Optional[str] = None
    rank_position: Optional[int] = None
    creative_data: Dict[str, Any] = Field(default_factory=dict)
    performance_metrics: Dict[str, Any] = Field(default_factory=dict)
    gated: bool = False


class GenerateMutationsRequest(BaseModel):
    ranked_creatives: List[RankedCreative]
    campaign_id: Optional[str] = None
    goal: Optional[str] = None
    user_id: Optional[str] = None


@router.post("/generate")
async def generate_mutations(
    request: GenerateMutationsRequest,
    _rate_limit: None = Depends(rate_limit("mutations_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user_record(db, auth)
    return await generate_mutations_service(
        user_id=scoped_user_id,
        payload=request.model_dump(exclude_none=True),
        db=db,
    )


@router.get("/events")
async def list_mutation_events(
    user_id: Optional[str] = Query(default=None),
    outcome_class: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await list_mutation_events_service(
        user_id=scoped_user_id,
        db=db,
        outcome_class=outcome_class,
        limit=limit,
    )
