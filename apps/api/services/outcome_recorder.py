"""Outcome recorder: settles mutation events and feeds the genome and regret ledger."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.mutation_event import MutationEvent
from services.genome import apply_outcome_to_genome
from services.mutation_types import OutcomeClass, OutcomeMetrics, RegretContext
from services.regret_ledger import record_regret_service

logger = logging.getLogger(__name__)

STABILITY_FLOOR = 0.5


def classify_outcome(
    *,
    rank_before: Optional[int],
    rank_after: Optional[int],
    metrics: OutcomeMetrics,
    win_roas: float = 1.0,
    loss_roas: float = 0.8,
) -> OutcomeClass:
    """Rank movement decides when both ranks are known (lower rank is better); otherwise ROAS."""
    if rank_before is not None and rank_after is not None and rank_before != rank_after:
        return OutcomeClass.WIN if rank_after < rank_before else OutcomeClass.LOSS
    if metrics.roas is None:
        return OutcomeClass.NEUTRAL
    if metrics.roas >= win_roas:
        return OutcomeClass.WIN
    if metrics.roas < loss_roas:
        return OutcomeClass.LOSS
    return OutcomeClass.NEUTRAL


def is_stable(metrics: OutcomeMetrics) -> bool:
    """Unknown stability counts as stable."""
    return metrics.stability_score is None or metrics.stability_score >= STABILITY_FLOOR


def classify_regret(metrics: OutcomeMetrics, outcome_class: OutcomeClass) -> Optional[Tuple[int, float, str]]:
    """
    Return (tier, severity, outcome_type) for regrettable outcomes, else None.

    Anything short of a win is unprofitable: tier 1 when ROAS went negative,
    tier 2 otherwise. A win only leaves a tier-3 regret when it was unstable.
    """
    if outcome_class is not OutcomeClass.WIN:
        if metrics.roas is not None and metrics.roas < 0:
            return 1, min(1.0, abs(metrics.roas)), "negative_roi"
        return 2, 0.5, "near_miss"
    if not is_stable(metrics):
        return 3, 0.3, "unstable"
    return None


def resulting_style(event: MutationEvent) -> str:
    """Style cluster the variant ended up in, read from its mutation descriptors."""
    style = event.base_style_cluster
    for mutation in event.mutations or []:
        if isinstance(mutation, dict) and mutation.get("param") == "style_cluster" and mutation.get("delta"):
            style = str(mutation["delta"])
    return style or "unknown"


def serialize_event(event: MutationEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "creative_id": event.creative_id,
        "campaign_id": event.campaign_id,
        "platform": event.platform,
        "base_style_cluster": event.base_style_cluster,
        "mutation_key": event.mutation_key,
        "mutation_source": event.mutation_source,
        "mutation_score": event.mutation_score,
        "rank_before": event.rank_before,
        "rank_after": event.rank_after,
        "outcome_metrics": event.outcome_metrics,
        "outcome_class": event.outcome_class,
        "applied": event.applied,
        "settled_at": event.settled_at.isoformat() if event.settled_at else None,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


async def settle_mutation_event_service(
    *,
    user_id: str,
    event_id: str,
    payload: Dict[str, Any],
    db: AsyncSession,
) -> Dict[str, Any]:
    """
    Record the real-world result of one emitted variant.

    The pending -> terminal transition happens at most once per event: the
    UPDATE is guarded by settled_at IS NULL, and only the settlement that
    wins that guard touches the genome and the regret ledger.
    """
    result = await db.execute(
        select(MutationEvent).where(MutationEvent.id == event_id, MutationEvent.user_id == user_id)
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise HTTPException(status_code=404, detail="Mutation event not found.")

    if event.settled_at is not None:
        logger.info("settlement_duplicate event=%s user=%s", event_id, user_id)
        return {"settled": False, "already_settled": True, "event": serialize_event(event)}

    raw_metrics = payload.get("outcome_metrics")
    if not isinstance(raw_metrics, dict) or not raw_metrics:
        raise HTTPException(status_code=422, detail="outcome_metrics is required")
    metrics = OutcomeMetrics.from_json(raw_metrics)
    rank_after = payload.get("rank_after")
    rank_after = int(rank_after) if rank_after is not None else None

    supplied_class = payload.get("outcome_class")
    if supplied_class:
        try:
            outcome_class = OutcomeClass(str(supplied_class).strip().lower())
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="outcome_class must be win, loss, or neutral") from exc
        if outcome_class is OutcomeClass.PENDING:
            raise HTTPException(status_code=422, detail="outcome_class must be win, loss, or neutral")
    else:
        outcome_class = classify_outcome(
            rank_before=event.rank_before,
            rank_after=rank_after,
            metrics=metrics,
            win_roas=float(settings.OUTCOME_WIN_ROAS),
            loss_roas=float(settings.OUTCOME_LOSS_ROAS),
        )

    settled_at = datetime.now(timezone.utc)
    guarded = await db.execute(
        update(MutationEvent)
        .where(MutationEvent.id == event_id, MutationEvent.settled_at.is_(None))
        .values(
            outcome_metrics=metrics.to_json() or dict(raw_metrics),
            outcome_class=outcome_class.value,
            rank_after=rank_after,
            settled_at=settled_at,
        )
        .execution_options(synchronize_session=False)
    )
    if guarded.rowcount == 0:
        await db.rollback()
        logger.info("settlement_lost_race event=%s user=%s", event_id, user_id)
        await db.refresh(event)
        return {"settled": False, "already_settled": True, "event": serialize_event(event)}

    style_cluster = resulting_style(event)
    await apply_outcome_to_genome(
        user_id=user_id,
        platform=event.platform,
        style_cluster=style_cluster,
        metrics=metrics,
        is_profitable=outcome_class is OutcomeClass.WIN,
        is_stable=is_stable(metrics),
        db=db,
    )

    regret = None
    regret_class = classify_regret(metrics, outcome_class)
    if regret_class is not None:
        tier, severity, outcome_type = regret_class
        regret = await record_regret_service(
            user_id=user_id,
            tier=tier,
            severity=severity,
            context=RegretContext.of(style_cluster, event.platform),
            db=db,
            creative_id=event.creative_id,
            outcome_type=outcome_type,
            extra_context={"roas": metrics.roas, "spend": metrics.spend, "mutation_event_id": event.id},
            commit=False,
        )

    await db.commit()
    await db.refresh(event)
    logger.info(
        "mutation_settled event=%s user=%s source=%s class=%s regret_tier=%s",
        event_id,
        user_id,
        event.mutation_source,
        outcome_class.value,
        regret["tier"] if regret else None,
    )
    return {
        "settled": True,
        "already_settled": False,
        "event": serialize_event(event),
        "regret": regret,
    }
