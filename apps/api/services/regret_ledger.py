"""Append-only regret ledger with read-time exponential severity decay."""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.regret_entry import RegretEntry
from services.mutation_types import MutationEngineError, RegretContext, RegretRecord, as_utc

logger = logging.getLogger(__name__)

REGRET_TIERS = (1, 2, 3)
DEFAULT_DECAY_LAMBDA = 0.05
DEFAULT_VETO_SEVERITY = 0.3
LEDGER_LOAD_LIMIT = 500
SECONDS_PER_DAY = 86400.0


def decay_severity(
    severity: float,
    created_at: datetime,
    now: datetime,
    decay_lambda: float = DEFAULT_DECAY_LAMBDA,
) -> float:
    """severity * e^(-lambda * age_days). Entries from the future are not amplified."""
    age_days = max((as_utc(now) - as_utc(created_at)).total_seconds() / SECONDS_PER_DAY, 0.0)
    return float(severity) * math.exp(-decay_lambda * age_days)


def _validate_entry(tier: Any, severity: Any) -> None:
    if tier not in REGRET_TIERS:
        raise MutationEngineError(f"regret tier must be one of {REGRET_TIERS}, got {tier!r}")
    try:
        value = float(severity)
    except (TypeError, ValueError) as exc:
        raise MutationEngineError("regret severity must be numeric") from exc
    if not 0.0 < value <= 1.0:
        raise MutationEngineError(f"regret severity must be in (0, 1], got {value}")


class RegretLedger:
    """
    In-memory view over a user's regret log.

    Entries are never mutated or removed; influence fades only through
    decay_severity() evaluated at query time.
    """

    def __init__(
        self,
        entries: Iterable[RegretRecord] = (),
        decay_lambda: float = DEFAULT_DECAY_LAMBDA,
    ):
        self._entries: List[RegretRecord] = list(entries)
        self.decay_lambda = decay_lambda

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple:
        return tuple(self._entries)

    def record(
        self,
        tier: int,
        severity: float,
        context: RegretContext,
        created_at: Optional[datetime] = None,
        regret_id: Optional[str] = None,
    ) -> RegretRecord:
        _validate_entry(tier, severity)
        entry = RegretRecord(
            id=regret_id or str(uuid.uuid4()),
            tier=int(tier),
            severity=float(severity),
            context=context,
            created_at=as_utc(created_at or datetime.now(timezone.utc)),
        )
        self._entries.append(entry)
        return entry

    def matching(self, context: RegretContext, tier: Optional[int] = None) -> List[RegretRecord]:
        return [
            entry
            for entry in self._entries
            if entry.context == context and (tier is None or entry.tier == tier)
        ]

    def decayed_severity(self, context: RegretContext, now: datetime, tier: Optional[int] = None) -> float:
        """Maximum decayed severity across entries matching the exact style/platform context."""
        return max(
            (
                decay_severity(entry.severity, entry.created_at, now, self.decay_lambda)
                for entry in self.matching(context, tier=tier)
            ),
            default=0.0,
        )

    def is_vetoed(
        self,
        context: RegretContext,
        now: datetime,
        threshold: float = DEFAULT_VETO_SEVERITY,
    ) -> bool:
        """True when any tier-1 regret on this context still decays above the threshold."""
        return self.decayed_severity(context, now, tier=1) > threshold


def _row_to_record(row: RegretEntry) -> RegretRecord:
    created_at = row.created_at or datetime.now(timezone.utc)
    return RegretRecord(
        id=row.id,
        tier=int(row.tier),
        severity=float(row.severity),
        context=RegretContext.of(row.style_cluster, row.platform),
        created_at=as_utc(created_at),
    )


async def load_regret_ledger(
    *,
    user_id: str,
    db: AsyncSession,
    limit: int = LEDGER_LOAD_LIMIT,
) -> RegretLedger:
    result = await db.execute(
        select(RegretEntry)
        .where(RegretEntry.user_id == user_id)
        .order_by(RegretEntry.created_at.desc())
        .limit(max(int(limit), 1))
    )
    rows = result.scalars().all()
    return RegretLedger(
        (_row_to_record(row) for row in rows),
        decay_lambda=float(settings.REGRET_DECAY_LAMBDA),
    )


async def record_regret_service(
    *,
    user_id: str,
    tier: int,
    severity: float,
    context: RegretContext,
    db: AsyncSession,
    creative_id: Optional[str] = None,
    outcome_type: Optional[str] = None,
    extra_context: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> Dict[str, Any]:
    """Append one regret row. Tier and severity come from the outcome classifier."""
    try:
        _validate_entry(tier, severity)
    except MutationEngineError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    row = RegretEntry(
        id=str(uuid.uuid4()),
        user_id=user_id,
        creative_id=creative_id,
        tier=int(tier),
        severity=float(severity),
        style_cluster=context.style_cluster,
        platform=context.platform,
        context_json={
            "style_cluster": context.style_cluster,
            "platform": context.platform,
            **(extra_context or {}),
        },
        outcome_type=outcome_type,
        created_at=datetime.now(timezone.utc),
    )
    db.add(row)
    if commit:
        await db.commit()
    else:
        await db.flush()

    logger.info(
        "regret_recorded user=%s tier=%s severity=%.3f context=%s/%s",
        user_id,
        tier,
        float(severity),
        context.style_cluster,
        context.platform,
    )
    return {
        "id": row.id,
        "tier": row.tier,
        "severity": row.severity,
        "context": {"style_cluster": row.style_cluster, "platform": row.platform},
        "created_at": row.created_at.isoformat(),
    }


async def get_decayed_severity_service(
    *,
    user_id: str,
    context: RegretContext,
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    ledger = await load_regret_ledger(user_id=user_id, db=db)
    at = as_utc(now or datetime.now(timezone.utc))
    threshold = float(settings.REGRET_VETO_SEVERITY)
    return {
        "context": {"style_cluster": context.style_cluster, "platform": context.platform},
        "decayed_severity": round(ledger.decayed_severity(context, at), 4),
        "matching_entries": len(ledger.matching(context)),
        "vetoed": ledger.is_vetoed(context, at, threshold=threshold),
        "veto_threshold": threshold,
        "evaluated_at": at.isoformat(),
    }
