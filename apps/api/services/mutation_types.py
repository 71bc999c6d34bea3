"""Shared value types for the creative mutation engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class MutationEngineError(RuntimeError):
    """Raised when an engine store receives input it cannot accept."""


class MutationSource(str, Enum):
    EXPLOIT = "exploit"
    EXPLORE = "explore"
    REGRET_AVOIDANCE = "regret_avoidance"
    GLOBAL = "global"  # drift detector only: unfiltered across sources

    @property
    def db_value(self) -> Optional[str]:
        """Value stored in mutation_source columns (global is stored as NULL)."""
        return None if self is MutationSource.GLOBAL else self.value

    @classmethod
    def from_db(cls, value: Optional[str]) -> "MutationSource":
        return cls.GLOBAL if value is None else cls(value)


# Sources a variant may be tagged with, in decision priority order.
VARIANT_SOURCES = (
    MutationSource.REGRET_AVOIDANCE,
    MutationSource.EXPLOIT,
    MutationSource.EXPLORE,
)
DRIFT_SOURCES = (
    MutationSource.EXPLOIT,
    MutationSource.EXPLORE,
    MutationSource.REGRET_AVOIDANCE,
    MutationSource.GLOBAL,
)


class OutcomeClass(str, Enum):
    WIN = "win"
    LOSS = "loss"
    NEUTRAL = "neutral"
    PENDING = "pending"


class AlertType(str, Enum):
    WIN_RATE_DROP = "win_rate_drop"
    ROAS_DROP = "roas_drop"
    VOLUME_ANOMALY = "volume_anomaly"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class EntropyState(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    HEALTHY = "healthy"


class MutationGoal(str, Enum):
    BALANCED = "balanced"
    ROI = "roi"
    EXPLORATION = "exploration"


class MutationType(str, Enum):
    PLATFORM_EXPANSION = "platform_expansion"
    STYLE_SHIFT = "style_shift"
    CTA_VARIANT = "cta_variant"
    REGRET_AVOIDANCE = "regret_avoidance"


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result:  # NaN
        return default
    return result


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if result != result else result


def _clip(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class OutcomeMetrics:
    """Settled performance numbers for a creative; any field may be absent."""

    roas: Optional[float] = None
    ctr: Optional[float] = None
    conversion_rate: Optional[float] = None
    spend: Optional[float] = None
    stability_score: Optional[float] = None

    @classmethod
    def from_json(cls, raw: Any) -> "OutcomeMetrics":
        if not isinstance(raw, Mapping):
            return cls()
        return cls(
            roas=_optional_float(raw.get("roas")),
            ctr=_optional_float(raw.get("ctr")),
            conversion_rate=_optional_float(raw.get("conversion_rate")),
            spend=_optional_float(raw.get("spend")),
            stability_score=_optional_float(raw.get("stability_score")),
        )

    @property
    def positive_roas(self) -> Optional[float]:
        if self.roas is not None and self.roas > 0:
            return self.roas
        return None

    def to_json(self) -> Dict[str, float]:
        payload = {
            "roas": self.roas,
            "ctr": self.ctr,
            "conversion_rate": self.conversion_rate,
            "spend": self.spend,
            "stability_score": self.stability_score,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class PlatformStats:
    wins: int = 0
    total: int = 0
    avg_roas: Optional[float] = None

    @property
    def success_rate(self) -> float:
        """wins/total; platforms without trials score zero."""
        if self.total <= 0:
            return 0.0
        return _clip(self.wins / self.total)

    def to_json(self) -> Dict[str, Any]:
        return {"wins": self.wins, "total": self.total, "avg_roas": self.avg_roas}


@dataclass(frozen=True)
class GenomeState:
    """Read-only view of a user's genome as consumed by the policy engine."""

    confidence: float = 0.0
    platform_success: Mapping[str, PlatformStats] = field(default_factory=dict)
    style_cluster_weights: Mapping[str, float] = field(default_factory=dict)
    baseline_risk_appetite: float = 0.5
    contextual_risk_modifier: float = 0.0

    @property
    def risk_appetite(self) -> float:
        return _clip(self.baseline_risk_appetite + self.contextual_risk_modifier)

    @classmethod
    def from_record(cls, record: Any) -> "GenomeState":
        """Build from a CreatorGenome row or a plain dict, degrading bad fields to defaults."""
        if record is None:
            return cls()
        if isinstance(record, Mapping):
            getter = record.get
        else:
            def getter(key, default=None):
                return getattr(record, key, default)

        raw_platforms = getter("platform_success", None)
        platforms: Dict[str, PlatformStats] = {}
        if isinstance(raw_platforms, Mapping):
            for name, stats in raw_platforms.items():
                if not isinstance(stats, Mapping):
                    continue
                platforms[str(name).strip().lower()] = PlatformStats(
                    wins=max(_safe_int(stats.get("wins")), 0),
                    total=max(_safe_int(stats.get("total")), 0),
                    avg_roas=_optional_float(stats.get("avg_roas")),
                )

        raw_clusters = getter("style_clusters", None)
        if raw_clusters is None:
            raw_clusters = getter("style_cluster_weights", None)
        clusters: Dict[str, float] = {}
        if isinstance(raw_clusters, Mapping):
            for name, weight in raw_clusters.items():
                value = _safe_float(weight, 0.0)
                if value > 0:
                    clusters[str(name)] = value

        confidence = getter("genome_confidence", None)
        if confidence is None:
            confidence = getter("confidence", 0.0)

        return cls(
            confidence=_clip(_safe_float(confidence, 0.0)),
            platform_success=platforms,
            style_cluster_weights=clusters,
            baseline_risk_appetite=_clip(_safe_float(getter("baseline_risk_appetite", 0.5), 0.5)),
            contextual_risk_modifier=_clip(_safe_float(getter("contextual_risk_modifier", 0.0), 0.0), -1.0, 1.0),
        )


@dataclass(frozen=True)
class RegretContext:
    style_cluster: str
    platform: str

    @classmethod
    def of(cls, style_cluster: Any, platform: Any) -> "RegretContext":
        return cls(
            style_cluster=str(style_cluster or "unknown"),
            platform=str(platform or "").strip().lower(),
        )


@dataclass(frozen=True)
class RegretRecord:
    id: str
    tier: int
    severity: float
    context: RegretContext
    created_at: datetime


@dataclass(frozen=True)
class CreativeInput:
    """A published creative as handed to the engine; creative_data is opaque."""

    id: str
    platform: str
    style_cluster: str
    rank_position: Optional[int] = None
    creative_data: Mapping[str, Any] = field(default_factory=dict)
    performance_metrics: OutcomeMetrics = field(default_factory=OutcomeMetrics)

    @property
    def context(self) -> RegretContext:
        return RegretContext.of(self.style_cluster, self.platform)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CreativeInput":
        creative_data = payload.get("creative_data")
        if not isinstance(creative_data, Mapping):
            creative_data = {}
        style_cluster = payload.get("style_cluster") or creative_data.get("style_cluster") or "unknown"
        rank = payload.get("rank_position")
        return cls(
            id=str(payload.get("id") or "").strip(),
            platform=str(payload.get("platform") or "").strip().lower(),
            style_cluster=str(style_cluster),
            rank_position=_safe_int(rank) if rank is not None else None,
            creative_data=dict(creative_data),
            performance_metrics=OutcomeMetrics.from_json(payload.get("performance_metrics")),
        )


@dataclass(frozen=True)
class Mutation:
    type: MutationType
    param: str
    delta: Any
    reason: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "param": self.param,
            "delta": self.delta,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class MutationVariant:
    """One emitted variant plus the provenance recorded as a MutationEvent."""

    variant_id: str
    creative_id: str
    source: MutationSource
    mutation_key: str
    mutations: Tuple[Mutation, ...]
    mutation_score: float
    base_style_cluster: str
    platform: str
    style_cluster: str
    rank_before: Optional[int]
    creative: Mapping[str, Any]

    def provenance(self) -> Dict[str, Any]:
        return {
            "creative_id": self.creative_id,
            "variant_id": self.variant_id,
            "mutation_key": self.mutation_key,
            "base_style_cluster": self.base_style_cluster,
            "platform": self.platform,
            "style_cluster": self.style_cluster,
            "mutations": [mutation.to_json() for mutation in self.mutations],
            "mutation_score": round(self.mutation_score, 4),
            "source": self.source.value,
            "rank_before": self.rank_before,
        }


@dataclass(frozen=True)
class SettledOutcome:
    """Minimal slice of a settled MutationEvent read by the drift detector."""

    outcome_class: OutcomeClass
    metrics: OutcomeMetrics

    @classmethod
    def from_row(cls, outcome_class: Any, outcome_metrics: Any) -> "SettledOutcome":
        try:
            resolved = OutcomeClass(str(outcome_class))
        except ValueError:
            resolved = OutcomeClass.NEUTRAL
        return cls(outcome_class=resolved, metrics=OutcomeMetrics.from_json(outcome_metrics))


@dataclass(frozen=True)
class AlertRecord:
    alert_type: AlertType
    mutation_source: MutationSource
    severity: AlertSeverity
    metric_name: str
    baseline_value: float
    current_value: float
    change_pct: float
    threshold_pct: float
    sample_size: int
    period_start: datetime
    period_end: datetime
    message: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "alert_type": self.alert_type.value,
            "mutation_source": self.mutation_source.db_value,
            "severity": self.severity.value,
            "metric_name": self.metric_name,
            "baseline_value": self.baseline_value,
            "current_value": self.current_value,
            "change_pct": self.change_pct,
            "threshold_pct": self.threshold_pct,
            "sample_size": self.sample_size,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "message": self.message,
        }
