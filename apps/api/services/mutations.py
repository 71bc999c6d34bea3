"""Variant generation service: runs the policy engine and records provenance."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.mutation_event import MutationEvent
from services.genome import load_genome_state
from services.mutation_policy import CreativeTransformer, PolicyConfig, plan_mutations
from services.mutation_types import CreativeInput, MutationGoal, OutcomeClass
from services.outcome_recorder import serialize_event
from services.regret_ledger import load_regret_ledger

logger = logging.getLogger(__name__)

MAX_INPUT_CREATIVES = 200


def _assert_mutation_engine_enabled() -> None:
    if not settings.MUTATION_ENGINE_ENABLED:
        raise HTTPException(status_code=503, detail="Mutation engine disabled by feature flag.")


def _parse_goal(value: Any) -> MutationGoal:
    if value is None or value == "":
        return MutationGoal.BALANCED
    try:
        return MutationGoal(str(value).strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=422, detail="goal must be balanced, roi, or exploration") from exc


def _parse_creatives(raw: Any) -> Tuple[List[CreativeInput], int]:
    """Split the ranked list into mutable creatives and a count of gated ones, which are never mutated."""
    if not isinstance(raw, list):
        raise HTTPException(status_code=422, detail="ranked_creatives must be a list")
    if len(raw) > MAX_INPUT_CREATIVES:
        raise HTTPException(status_code=422, detail=f"ranked_creatives accepts at most {MAX_INPUT_CREATIVES} items")
    items = [item for item in raw if isinstance(item, dict)]
    gated = sum(1 for item in items if item.get("gated"))
    return [CreativeInput.from_payload(item) for item in items if not item.get("gated")], gated


async def generate_mutations_service(
    *,
    user_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
    transformer: Optional[CreativeTransformer] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    _assert_mutation_engine_enabled()
    goal = _parse_goal(payload.get("goal"))
    creatives, gated_count = _parse_creatives(payload.get("ranked_creatives"))
    campaign_id = payload.get("campaign_id")

    genome = await load_genome_state(user_id=user_id, db=db)
    ledger = await load_regret_ledger(user_id=user_id, db=db)
    plan = plan_mutations(
        genome,
        ledger,
        creatives,
        transformer,
        goal=goal,
        config=PolicyConfig.from_settings(),
        now=now or datetime.now(timezone.utc),
    )

    created_at = datetime.now(timezone.utc)
    provenance: List[Dict[str, Any]] = []
    for variant in plan.variants:
        event = MutationEvent(
            id=str(uuid.uuid4()),
            user_id=user_id,
            creative_id=variant.creative_id,
            campaign_id=str(campaign_id) if campaign_id else None,
            platform=variant.platform,
            base_style_cluster=variant.base_style_cluster,
            mutation_key=variant.mutation_key,
            mutations=[mutation.to_json() for mutation in variant.mutations],
            mutation_source=variant.source.value,
            mutation_score=round(variant.mutation_score, 4),
            rank_before=variant.rank_before,
            outcome_class=OutcomeClass.PENDING.value,
            applied=True,
            created_at=created_at,
        )
        db.add(event)
        provenance.append({"event_id": event.id, **variant.provenance()})
    if plan.variants:
        await db.commit()

    metadata = plan.metadata()
    metadata["goal"] = goal.value
    metadata["genome_confidence"] = genome.confidence
    metadata["gated_skipped"] = gated_count
    logger.info(
        "mutations_generated user=%s input=%s emitted=%s entropy=%.3f goal=%s vetoed=%s gated=%s",
        user_id,
        len(creatives),
        len(plan.variants),
        plan.normalized_entropy,
        goal.value,
        len(plan.vetoed),
        gated_count,
    )
    return {
        "original_creatives": len(creatives) + gated_count,
        "mutated_creatives": [dict(variant.creative) for variant in plan.variants],
        "mutation_provenance": provenance,
        "vetoed": plan.vetoed,
        "metadata": metadata,
    }


async def list_mutation_events_service(
    *,
    user_id: str,
    db: AsyncSession,
    outcome_class: Optional[str] = None,
    limit: int = 50,
) -> Dict[str, Any]:
    query = select(MutationEvent).where(MutationEvent.user_id == user_id)
    if outcome_class:
        try:
            resolved = OutcomeClass(str(outcome_class).strip().lower())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="outcome_class must be win, loss, neutral, or pending") from exc
        query = query.where(MutationEvent.outcome_class == resolved.value)
    result = await db.execute(query.order_by(MutationEvent.created_at.desc()).limit(max(min(int(limit), 200), 1)))
    events = result.scalars().all()
    return {"count": len(events), "events": [serialize_event(event) for event in events]}
