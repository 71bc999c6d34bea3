"""
Mutation policy engine.

Decides, per ranked creative, which variants to try next:

- exploit: move the creative toward the platform the genome already knows
  performs best (requires genome confidence above the exploit threshold);
- explore: diversify when the style-cluster distribution is collapsing,
  measured by normalized Shannon entropy;
- regret avoidance: steer away from style/platform combinations with a
  live tier-1 regret, and veto any candidate that would land in one.

plan_mutations() is a pure function of the genome, the regret ledger, the
creative list and a CreativeTransformer. It keeps no state between calls.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from config import settings
from services.mutation_types import (
    CreativeInput,
    EntropyState,
    GenomeState,
    Mutation,
    MutationGoal,
    MutationSource,
    MutationType,
    MutationVariant,
    RegretContext,
    VARIANT_SOURCES,
    as_utc,
)
from services.regret_ledger import RegretLedger

CTA_VARIANTS = ["Shop Now", "Learn More", "Get Started", "Try Free", "Sign Up"]
ALTERNATIVE_STYLES = ["minimalist", "bold", "professional", "playful", "elegant"]
DEFAULT_CTA = "Learn More"

# Weight given to optional exploration when the style distribution is healthy.
HEALTHY_EXPLORE_WEIGHT = 0.1


@dataclass(frozen=True)
class PolicyConfig:
    max_new_variants: int = 12
    max_mutations_per_creative: int = 3
    exploit_confidence_threshold: float = 0.5
    entropy_critical_below: float = 0.4
    entropy_warning_below: float = 0.6
    regret_veto_severity: float = 0.3
    exploit_style_min_share: float = 0.4
    explore_min_platform_roas: float = 0.8
    explore_max_platform_trials: int = 5
    explore_platform_limit: int = 2

    @classmethod
    def from_settings(cls) -> "PolicyConfig":
        return cls(
            max_new_variants=max(int(settings.MAX_NEW_VARIANTS), 0),
            max_mutations_per_creative=max(int(settings.MAX_MUTATIONS_PER_CREATIVE), 0),
            exploit_confidence_threshold=float(settings.EXPLOIT_CONFIDENCE_THRESHOLD),
            entropy_critical_below=float(settings.ENTROPY_CRITICAL_BELOW),
            entropy_warning_below=float(settings.ENTROPY_WARNING_BELOW),
            regret_veto_severity=float(settings.REGRET_VETO_SEVERITY),
        )


def seeded_pick(seed: str, options: Sequence[str]) -> str:
    """Deterministic choice so the same creative/reason always yields the same option."""
    if not options:
        raise ValueError("seeded_pick requires at least one option")
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return options[int(digest[:8], 16) % len(options)]


def _seeded_order(seed: str, options: Sequence[str]) -> List[str]:
    remaining = list(dict.fromkeys(options))
    ordered: List[str] = []
    while remaining:
        choice = seeded_pick(f"{seed}:{len(ordered)}", remaining)
        ordered.append(choice)
        remaining.remove(choice)
    return ordered


def _key_slug(mutation_key: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", mutation_key.lower()).strip("_")


def _variant_id(creative_id: str, mutation_key: str) -> str:
    return f"{creative_id}_mut_{_key_slug(mutation_key)}"


class CreativeTransformer(Protocol):
    """Creative-content collaborator: proposes copy changes and renders mutated creatives."""

    def propose_cta(self, creative: CreativeInput) -> str:
        ...

    def apply(self, creative: CreativeInput, mutations: Sequence[Mutation]) -> Dict[str, Any]:
        ...


class DefaultCreativeTransformer:
    """Applies mutation descriptors field-by-field to a copy of the creative payload."""

    def propose_cta(self, creative: CreativeInput) -> str:
        current = str(creative.creative_data.get("cta_text") or DEFAULT_CTA)
        options = [cta for cta in CTA_VARIANTS if cta != current] or CTA_VARIANTS
        return seeded_pick(f"{creative.id}:cta", options)

    def apply(self, creative: CreativeInput, mutations: Sequence[Mutation]) -> Dict[str, Any]:
        creative_data = dict(creative.creative_data)
        mutated: Dict[str, Any] = {
            "platform": creative.platform,
            "style_cluster": creative.style_cluster,
            "rank_position": creative.rank_position,
            "performance_metrics": creative.performance_metrics.to_json(),
        }
        for mutation in mutations:
            if mutation.param == "platform":
                mutated["platform"] = str(mutation.delta)
            elif mutation.param == "style_cluster":
                mutated["style_cluster"] = str(mutation.delta)
                creative_data["style_cluster"] = str(mutation.delta)
            else:
                creative_data[mutation.param] = mutation.delta
        mutated["creative_data"] = creative_data
        mutated["is_mutation"] = True
        mutated["parent_creative_id"] = creative.id
        return mutated


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def platform_scores(genome: GenomeState) -> Dict[str, float]:
    """wins/total per platform; platforms with no trials score 0."""
    return {platform: stats.success_rate for platform, stats in genome.platform_success.items()}


def ranked_platforms(genome: GenomeState) -> List[Tuple[str, float]]:
    scores = platform_scores(genome)
    totals = {platform: stats.total for platform, stats in genome.platform_success.items()}
    return sorted(
        ((platform, score) for platform, score in scores.items() if score > 0),
        key=lambda item: (-item[1], -totals.get(item[0], 0), item[0]),
    )


def top_platform(genome: GenomeState) -> Optional[str]:
    ranked = ranked_platforms(genome)
    return ranked[0][0] if ranked else None


def normalized_entropy(distribution: Mapping[str, float]) -> float:
    """
    Shannon entropy of the distribution divided by log2(k), k = non-zero clusters.

    Distributions with fewer than two populated clusters carry no diversity
    signal and report 1.0.
    """
    values = [float(value) for value in distribution.values() if float(value) > 0]
    total = sum(values)
    k = len(values)
    if total <= 0 or k <= 1:
        return 1.0
    entropy = 0.0
    for value in values:
        p = value / total
        entropy -= p * math.log2(p)
    return entropy / math.log2(k)


def entropy_state(entropy: float, config: PolicyConfig = PolicyConfig()) -> EntropyState:
    if entropy < config.entropy_critical_below:
        return EntropyState.CRITICAL
    if entropy < config.entropy_warning_below:
        return EntropyState.WARNING
    return EntropyState.HEALTHY


def exploit_eligible(genome: GenomeState, creative: CreativeInput, config: PolicyConfig = PolicyConfig()) -> bool:
    if genome.confidence <= config.exploit_confidence_threshold:
        return False
    best = top_platform(genome)
    return best is not None and best != creative.platform


def explore_eligibility(
    entropy: float,
    goal: MutationGoal = MutationGoal.BALANCED,
    config: PolicyConfig = PolicyConfig(),
) -> Tuple[bool, bool]:
    """Return (eligible, mandatory)."""
    state = entropy_state(entropy, config)
    if state is EntropyState.CRITICAL:
        return True, True
    if state is EntropyState.WARNING:
        return True, False
    return goal is MutationGoal.EXPLORATION, False


# ---------------------------------------------------------------------------
# Candidate generation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Target:
    platform: str
    style_cluster: str
    mutations: Tuple[Mutation, ...]
    score: float

    @property
    def context(self) -> RegretContext:
        return RegretContext.of(self.style_cluster, self.platform)

    @property
    def mutation_key(self) -> str:
        parts = []
        for mutation in self.mutations:
            if mutation.type is MutationType.CTA_VARIANT:
                parts.append(f"cta:{_key_slug(str(mutation.delta))}")
            elif mutation.param == "platform":
                parts.append(f"platform:{mutation.delta}")
            else:
                parts.append(f"style:{mutation.delta}")
        return "+".join(parts)


@dataclass(frozen=True)
class _Candidate:
    source: MutationSource
    # First non-vetoed option wins; later options are fallbacks.
    options: Tuple[_Target, ...]


@dataclass
class MutationPlan:
    variants: List[MutationVariant] = field(default_factory=list)
    normalized_entropy: float = 1.0
    entropy_state: EntropyState = EntropyState.HEALTHY
    top_platform: Optional[str] = None
    vetoed: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, source: MutationSource) -> int:
        return sum(1 for variant in self.variants if variant.source is source)

    def metadata(self) -> Dict[str, Any]:
        return {
            "total_mutations": len(self.variants),
            "normalized_entropy": round(self.normalized_entropy, 4),
            "entropy_state": self.entropy_state.value,
            "top_platform": self.top_platform,
            "exploit_count": self.count(MutationSource.EXPLOIT),
            "explore_count": self.count(MutationSource.EXPLORE),
            "avoidance_count": self.count(MutationSource.REGRET_AVOIDANCE),
            "vetoed_count": len(self.vetoed),
        }


def _exploit_candidates(
    creative: CreativeInput,
    genome: GenomeState,
    config: PolicyConfig,
) -> List[_Candidate]:
    ranked = [(platform, score) for platform, score in ranked_platforms(genome) if platform != creative.platform]
    if not ranked:
        return []

    span = max(1.0 - config.exploit_confidence_threshold, 1e-9)
    margin = max(genome.confidence - config.exploit_confidence_threshold, 0.0) / span

    options = []
    for platform, rate in ranked:
        options.append(
            _Target(
                platform=platform,
                style_cluster=creative.style_cluster,
                mutations=(
                    Mutation(
                        type=MutationType.PLATFORM_EXPANSION,
                        param="platform",
                        delta=platform,
                        reason=f"Top platform by win rate ({rate:.3f}), confidence margin {margin:.3f}",
                    ),
                ),
                score=0.5 * margin + 0.5 * rate,
            )
        )
    candidates = [_Candidate(source=MutationSource.EXPLOIT, options=tuple(options))]

    weights = genome.style_cluster_weights
    total_weight = sum(weights.values())
    if total_weight > 0:
        dominant, dominant_weight = sorted(weights.items(), key=lambda item: (-item[1], item[0]))[0]
        share = dominant_weight / total_weight
        if dominant != creative.style_cluster and share >= config.exploit_style_min_share:
            platform, rate = ranked[0]
            candidates.append(
                _Candidate(
                    source=MutationSource.EXPLOIT,
                    options=(
                        _Target(
                            platform=platform,
                            style_cluster=dominant,
                            mutations=(
                                Mutation(
                                    type=MutationType.PLATFORM_EXPANSION,
                                    param="platform",
                                    delta=platform,
                                    reason=f"Top platform by win rate ({rate:.3f})",
                                ),
                                Mutation(
                                    type=MutationType.STYLE_SHIFT,
                                    param="style_cluster",
                                    delta=dominant,
                                    reason=f"Dominant genome style ({share:.3f} of weight)",
                                ),
                            ),
                            score=(0.5 * margin + 0.5 * rate) * share,
                        ),
                    ),
                )
            )
    return candidates


def _explore_candidates(
    creative: CreativeInput,
    genome: GenomeState,
    entropy: float,
    config: PolicyConfig,
    transformer: CreativeTransformer,
) -> List[_Candidate]:
    state = entropy_state(entropy, config)
    deficit = max(config.entropy_warning_below - entropy, 0.0) / max(config.entropy_warning_below, 1e-9)
    strength = max(deficit, HEALTHY_EXPLORE_WEIGHT) * (0.5 + 0.5 * genome.risk_appetite)
    boost = (config.entropy_critical_below - entropy) * 2 if state is EntropyState.CRITICAL else 0.0

    candidates: List[_Candidate] = []

    under_explored = sorted(
        (
            (platform, stats)
            for platform, stats in genome.platform_success.items()
            if platform != creative.platform
            and 1 <= stats.total < config.explore_max_platform_trials
            and (stats.avg_roas or 0.0) > config.explore_min_platform_roas
        ),
        key=lambda item: (-(item[1].avg_roas or 0.0), item[0]),
    )
    for platform, stats in under_explored[: config.explore_platform_limit]:
        candidates.append(
            _Candidate(
                source=MutationSource.EXPLORE,
                options=(
                    _Target(
                        platform=platform,
                        style_cluster=creative.style_cluster,
                        mutations=(
                            Mutation(
                                type=MutationType.PLATFORM_EXPANSION,
                                param="platform",
                                delta=platform,
                                reason=(
                                    f"Under-explored platform with decent ROAS "
                                    f"({stats.total} tries, avg_roas={stats.avg_roas:.2f})"
                                ),
                            ),
                        ),
                        score=(stats.avg_roas or 0.0) * (1 + boost) * genome.risk_appetite,
                    ),
                ),
            )
        )

    known_styles = sorted(
        (style for style in genome.style_cluster_weights if style != creative.style_cluster),
        key=lambda style: (genome.style_cluster_weights[style], style),
    )
    fresh_styles = [
        style
        for style in ALTERNATIVE_STYLES
        if style != creative.style_cluster and style not in genome.style_cluster_weights
    ]
    style_options = tuple(
        _Target(
            platform=creative.platform,
            style_cluster=style,
            mutations=(
                Mutation(
                    type=MutationType.STYLE_SHIFT,
                    param="style_cluster",
                    delta=style,
                    reason=f"Diversify style mix (entropy={entropy:.3f})",
                ),
            ),
            score=strength,
        )
        for style in fresh_styles + known_styles
    )
    if style_options:
        candidates.append(_Candidate(source=MutationSource.EXPLORE, options=style_options))

    if state is EntropyState.CRITICAL:
        new_cta = transformer.propose_cta(creative)
        candidates.append(
            _Candidate(
                source=MutationSource.EXPLORE,
                options=(
                    _Target(
                        platform=creative.platform,
                        style_cluster=creative.style_cluster,
                        mutations=(
                            Mutation(
                                type=MutationType.CTA_VARIANT,
                                param="cta_text",
                                delta=new_cta,
                                reason=f"Low entropy exploration ({entropy:.3f})",
                            ),
                        ),
                        score=strength * (1 + boost),
                    ),
                ),
            )
        )
    return candidates


def _avoidance_candidates(
    creative: CreativeInput,
    genome: GenomeState,
    ledger: RegretLedger,
    now: datetime,
    config: PolicyConfig,
) -> List[_Candidate]:
    context = creative.context
    if not ledger.is_vetoed(context, now, threshold=config.regret_veto_severity):
        return []

    severity = ledger.decayed_severity(context, now, tier=1)
    pool = [
        style
        for style in list(ALTERNATIVE_STYLES) + sorted(genome.style_cluster_weights)
        if style != creative.style_cluster
    ]
    options = tuple(
        _Target(
            platform=creative.platform,
            style_cluster=style,
            mutations=(
                Mutation(
                    type=MutationType.REGRET_AVOIDANCE,
                    param="style_cluster",
                    delta=style,
                    reason=f"Avoid tier-1 regret pattern (decayed severity={severity:.3f})",
                ),
            ),
            score=severity,
        )
        for style in _seeded_order(f"{creative.id}:regret", pool)
    )
    return [_Candidate(source=MutationSource.REGRET_AVOIDANCE, options=options)]


def _resolve(
    candidate: _Candidate,
    ledger: RegretLedger,
    now: datetime,
    config: PolicyConfig,
) -> Optional[_Target]:
    for option in candidate.options:
        if not ledger.is_vetoed(option.context, now, threshold=config.regret_veto_severity):
            return option
    return None


def _select_for_creative(
    resolved: List[Tuple[MutationSource, _Target]],
    cap: int,
    explore_mandatory: bool,
) -> List[Tuple[MutationSource, _Target]]:
    priority = {source: index for index, source in enumerate(VARIANT_SOURCES)}
    seen = set()
    unique: List[Tuple[MutationSource, _Target]] = []
    for source, target in sorted(resolved, key=lambda item: (priority[item[0]], -item[1].score)):
        if target.mutation_key in seen:
            continue
        seen.add(target.mutation_key)
        unique.append((source, target))

    selected = unique[:cap]
    if explore_mandatory and cap > 0 and not any(source is MutationSource.EXPLORE for source, _ in selected):
        explore = next((item for item in unique if item[0] is MutationSource.EXPLORE), None)
        if explore is not None:
            selected = selected[: cap - 1] + [explore]
    return selected


def _rank_key(creative: CreativeInput) -> Tuple[int, int]:
    if creative.rank_position is None:
        return (1, 0)
    return (0, creative.rank_position)


def plan_mutations(
    genome: GenomeState,
    ledger: RegretLedger,
    creatives: Sequence[CreativeInput],
    transformer: Optional[CreativeTransformer] = None,
    *,
    goal: MutationGoal = MutationGoal.BALANCED,
    config: PolicyConfig = PolicyConfig(),
    now: Optional[datetime] = None,
) -> MutationPlan:
    """Produce at most config.max_new_variants variants, at most max_mutations_per_creative per creative."""
    transformer = transformer or DefaultCreativeTransformer()
    at = as_utc(now or datetime.now(timezone.utc))
    entropy = normalized_entropy(genome.style_cluster_weights)
    plan = MutationPlan(
        normalized_entropy=entropy,
        entropy_state=entropy_state(entropy, config),
        top_platform=top_platform(genome),
    )
    explore_ok, explore_mandatory = explore_eligibility(entropy, goal, config)
    exploit_goal = goal in (MutationGoal.BALANCED, MutationGoal.ROI)
    # Repeated creative ids share one cap and one set of variant ids.
    emitted_per_creative: Dict[str, int] = {}
    emitted_ids: Set[str] = set()

    for creative in sorted(creatives, key=_rank_key):
        remaining = config.max_new_variants - len(plan.variants)
        if remaining <= 0:
            break
        if not creative.id:
            continue
        cap = min(config.max_mutations_per_creative - emitted_per_creative.get(creative.id, 0), remaining)
        if cap <= 0:
            continue

        candidates = _avoidance_candidates(creative, genome, ledger, at, config)
        if exploit_goal and exploit_eligible(genome, creative, config):
            candidates.extend(_exploit_candidates(creative, genome, config))
        if explore_ok:
            candidates.extend(_explore_candidates(creative, genome, entropy, config, transformer))

        resolved: List[Tuple[MutationSource, _Target]] = []
        for candidate in candidates:
            target = _resolve(candidate, ledger, at, config)
            if target is None:
                blocked = candidate.options[0]
                plan.vetoed.append(
                    {
                        "creative_id": creative.id,
                        "source": candidate.source.value,
                        "mutation_key": blocked.mutation_key,
                        "style_cluster": blocked.style_cluster,
                        "platform": blocked.platform,
                    }
                )
                continue
            if _variant_id(creative.id, target.mutation_key) in emitted_ids:
                continue
            resolved.append((candidate.source, target))

        for source, target in _select_for_creative(resolved, cap, explore_mandatory):
            mutation_key = target.mutation_key
            variant_id = _variant_id(creative.id, mutation_key)
            emitted_ids.add(variant_id)
            emitted_per_creative[creative.id] = emitted_per_creative.get(creative.id, 0) + 1
            plan.variants.append(
                MutationVariant(
                    variant_id=variant_id,
                    creative_id=creative.id,
                    source=source,
                    mutation_key=mutation_key,
                    mutations=target.mutations,
                    mutation_score=target.score,
                    base_style_cluster=creative.style_cluster,
                    platform=target.platform,
                    style_cluster=target.style_cluster,
                    rank_before=creative.rank_position,
                    creative={
                        "id": variant_id,
                        **transformer.apply(creative, target.mutations),
                        "mutation_source": source.value,
                    },
                )
            )

    return plan
