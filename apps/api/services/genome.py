"""Genome store: per-user learned state, folded forward from settled outcomes."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.creator_genome import CreatorGenome
from services.mutation_policy import PolicyConfig, entropy_state, normalized_entropy, top_platform
from services.mutation_types import GenomeState, OutcomeMetrics

logger = logging.getLogger(__name__)

DEFAULT_PLATFORMS = ("meta", "google", "tiktok", "linkedin", "x")


def _empty_platform_success() -> Dict[str, Dict[str, Any]]:
    return {platform: {"wins": 0, "total": 0, "avg_roas": None} for platform in DEFAULT_PLATFORMS}


def raw_entropy(style_clusters: Mapping[str, float]) -> float:
    """Un-normalized Shannon entropy (bits) of the style-cluster counts."""
    total = sum(float(value) for value in style_clusters.values() if float(value) > 0)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for value in style_clusters.values():
        p = float(value) / total
        if p > 0:
            entropy -= p * math.log2(p)
    return entropy


def genome_confidence(total_creatives: int, profitable_creatives: int, entropy_bits: float) -> float:
    # Data volume (0-0.4) + profit ratio (0-0.3) + moderate-entropy bonus (0.15-0.3).
    profit_ratio = profitable_creatives / total_creatives if total_creatives > 0 else 0.0
    confidence = min(0.4, total_creatives / 50.0)
    confidence += profit_ratio * 0.3
    confidence += 0.3 if 0.5 < entropy_bits < 2.5 else 0.15
    return min(1.0, confidence)


async def get_or_create_genome(*, user_id: str, db: AsyncSession, for_update: bool = False) -> CreatorGenome:
    query = select(CreatorGenome).where(CreatorGenome.user_id == user_id)
    if for_update:
        # Serializes concurrent aggregators for the same user (no-op on SQLite).
        query = query.with_for_update()
    result = await db.execute(query)
    genome = result.scalar_one_or_none()
    if genome is not None:
        return genome

    genome = CreatorGenome(
        id=str(uuid.uuid4()),
        user_id=user_id,
        genome_confidence=0.0,
        platform_success=_empty_platform_success(),
        style_clusters={},
        baseline_risk_appetite=0.5,
        contextual_risk_modifier=0.0,
        total_creatives=0,
        profitable_creatives=0,
        intra_genome_entropy=0.0,
    )
    db.add(genome)
    await db.flush()
    return genome


async def load_genome_state(*, user_id: str, db: AsyncSession) -> GenomeState:
    result = await db.execute(select(CreatorGenome).where(CreatorGenome.user_id == user_id))
    return GenomeState.from_record(result.scalar_one_or_none())


async def apply_outcome_to_genome(
    *,
    user_id: str,
    platform: str,
    style_cluster: str,
    metrics: OutcomeMetrics,
    is_profitable: bool,
    db: AsyncSession,
    is_stable: bool = True,
) -> CreatorGenome:
    """
    Fold one settled outcome into the user's genome. Caller owns the commit.

    Platform wins follow profitability alone; profitable_creatives, which feeds
    confidence, only counts outcomes that were profitable and stable.
    """
    genome = await get_or_create_genome(user_id=user_id, db=db, for_update=True)
    decay = float(settings.GENOME_EMA_DECAY)

    platform_success = {
        name: dict(stats) for name, stats in (genome.platform_success or {}).items() if isinstance(stats, dict)
    }
    platform_key = str(platform or "").strip().lower()
    if platform_key:
        stats = platform_success.setdefault(platform_key, {"wins": 0, "total": 0, "avg_roas": None})
        stats["total"] = int(stats.get("total") or 0) + 1
        if is_profitable:
            stats["wins"] = int(stats.get("wins") or 0) + 1
        if metrics.roas is not None:
            previous = stats.get("avg_roas")
            stats["avg_roas"] = (
                metrics.roas if previous is None else float(previous) * (1 - decay) + metrics.roas * decay
            )

    style_clusters = dict(genome.style_clusters or {})
    cluster = style_cluster or "unknown"
    style_clusters[cluster] = float(style_clusters.get(cluster, 0) or 0) + 1

    total_creatives = int(genome.total_creatives or 0) + 1
    profitable_creatives = int(genome.profitable_creatives or 0) + (1 if is_profitable and is_stable else 0)
    entropy_bits = raw_entropy(style_clusters)

    # JSON columns are reassigned so the ORM detects the change.
    genome.platform_success = platform_success
    genome.style_clusters = style_clusters
    genome.total_creatives = total_creatives
    genome.profitable_creatives = profitable_creatives
    genome.intra_genome_entropy = round(entropy_bits, 4)
    genome.genome_confidence = round(genome_confidence(total_creatives, profitable_creatives, entropy_bits), 4)
    await db.flush()

    logger.info(
        "genome_updated user=%s platform=%s cluster=%s confidence=%.2f entropy=%.2f",
        user_id,
        platform_key,
        cluster,
        genome.genome_confidence,
        entropy_bits,
    )
    return genome


def serialize_genome(genome: Optional[CreatorGenome], config: Optional[PolicyConfig] = None) -> Dict[str, Any]:
    config = config or PolicyConfig.from_settings()
    state = GenomeState.from_record(genome)
    entropy = normalized_entropy(state.style_cluster_weights)
    return {
        "exists": genome is not None,
        "genome_confidence": state.confidence,
        "platform_success": {name: stats.to_json() for name, stats in state.platform_success.items()},
        "style_clusters": dict(state.style_cluster_weights),
        "baseline_risk_appetite": state.baseline_risk_appetite,
        "contextual_risk_modifier": state.contextual_risk_modifier,
        "total_creatives": int(getattr(genome, "total_creatives", 0) or 0),
        "profitable_creatives": int(getattr(genome, "profitable_creatives", 0) or 0),
        "top_platform": top_platform(state),
        "normalized_entropy": round(entropy, 4),
        "entropy_state": entropy_state(entropy, config).value,
    }


async def get_genome_service(*, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(CreatorGenome).where(CreatorGenome.user_id == user_id))
    return serialize_genome(result.scalar_one_or_none())
