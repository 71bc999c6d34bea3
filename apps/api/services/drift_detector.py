"""
Drift detector: compares each mutation source's recent performance with its
own trailing baseline and raises alerts when it degrades.

The run is split in two:

- evaluate_drift() is pure: settled outcomes in, AlertRecords out.
- run_drift_check_service() does the IO: one independent session per source
  (queried concurrently), a single batch insert for all alerts, then a
  best-effort digest to the notification webhook.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.mutation_alert import MutationAlert
from models.mutation_event import MutationEvent
from services.mutation_types import (
    DRIFT_SOURCES,
    AlertRecord,
    AlertSeverity,
    AlertType,
    MutationSource,
    OutcomeClass,
    SettledOutcome,
    as_utc,
)
from services.notifications import send_alert_digest

logger = logging.getLogger(__name__)

VOLUME_DROP_RATIO = 0.3
VOLUME_MIN_EXPECTED = 10.0


@dataclass(frozen=True)
class DriftThresholds:
    win_rate_drop_pct: float
    roas_drop_pct: float
    min_sample_size: int
    severity_critical_pct: float


DEFAULT_THRESHOLDS: Dict[MutationSource, DriftThresholds] = {
    MutationSource.EXPLOIT: DriftThresholds(15.0, 20.0, 10, 30.0),
    MutationSource.EXPLORE: DriftThresholds(25.0, 30.0, 15, 50.0),
    MutationSource.REGRET_AVOIDANCE: DriftThresholds(20.0, 25.0, 8, 40.0),
    MutationSource.GLOBAL: DriftThresholds(18.0, 22.0, 25, 35.0),
}


@dataclass(frozen=True)
class ThresholdTable:
    """Per-source thresholds; explore tolerates more variance than exploit."""

    thresholds: Mapping[MutationSource, DriftThresholds] = field(
        default_factory=lambda: dict(DEFAULT_THRESHOLDS)
    )

    def for_source(self, source: MutationSource) -> DriftThresholds:
        return self.thresholds.get(source, DEFAULT_THRESHOLDS[source])

    @classmethod
    def from_json(cls, raw: str) -> "ThresholdTable":
        """
        Merge overrides such as {"exploit": {"win_rate_drop_pct": 12}} onto the defaults.

        Raises ValueError on malformed input so bad configuration fails loudly.
        """
        table = dict(DEFAULT_THRESHOLDS)
        if not raw or not raw.strip():
            return cls(table)
        try:
            overrides = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"DRIFT_THRESHOLDS_JSON is not valid JSON: {exc}") from exc
        if not isinstance(overrides, dict):
            raise ValueError("DRIFT_THRESHOLDS_JSON must be an object keyed by mutation source")

        for key, values in overrides.items():
            try:
                source = MutationSource(str(key))
            except ValueError as exc:
                raise ValueError(f"Unknown mutation source in drift thresholds: {key!r}") from exc
            if not isinstance(values, dict):
                raise ValueError(f"Drift thresholds for {key!r} must be an object")
            unknown = set(values) - set(DriftThresholds.__dataclass_fields__)
            if unknown:
                raise ValueError(f"Unknown drift threshold fields for {key!r}: {sorted(unknown)}")
            merged = replace(table[source], **values)
            try:
                table[source] = DriftThresholds(
                    win_rate_drop_pct=float(merged.win_rate_drop_pct),
                    roas_drop_pct=float(merged.roas_drop_pct),
                    min_sample_size=int(merged.min_sample_size),
                    severity_critical_pct=float(merged.severity_critical_pct),
                )
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Drift thresholds for {key!r} must be numeric: {exc}") from exc
        return cls(table)

    @classmethod
    def from_settings(cls) -> "ThresholdTable":
        return cls.from_json(settings.DRIFT_THRESHOLDS_JSON)


@dataclass(frozen=True)
class DriftWindow:
    """Baseline is [baseline_start, current_start); current is [current_start, end)."""

    baseline_start: datetime
    current_start: datetime
    end: datetime

    @classmethod
    def ending_at(cls, now: datetime, baseline_days: int = 30, current_days: int = 7) -> "DriftWindow":
        if current_days <= 0 or baseline_days <= current_days:
            raise ValueError("drift windows need baseline_days > current_days > 0")
        end = as_utc(now)
        return cls(
            baseline_start=end - timedelta(days=baseline_days),
            current_start=end - timedelta(days=current_days),
            end=end,
        )

    @property
    def baseline_days(self) -> float:
        return (self.current_start - self.baseline_start).total_seconds() / 86400.0

    @property
    def current_days(self) -> float:
        return (self.end - self.current_start).total_seconds() / 86400.0


def win_rate(outcomes: Sequence[SettledOutcome]) -> float:
    if not outcomes:
        return 0.0
    wins = sum(1 for outcome in outcomes if outcome.outcome_class is OutcomeClass.WIN)
    return wins / len(outcomes)


def positive_roas(outcomes: Sequence[SettledOutcome]) -> List[float]:
    return [outcome.metrics.positive_roas for outcome in outcomes if outcome.metrics.positive_roas is not None]


def _average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def change_pct(baseline: float, current: float) -> float:
    if baseline <= 0:
        return 0.0
    return (current - baseline) / baseline * 100.0


def _severity(change: float, thresholds: DriftThresholds) -> AlertSeverity:
    if abs(change) > thresholds.severity_critical_pct:
        return AlertSeverity.CRITICAL
    return AlertSeverity.WARNING


def evaluate_source_drift(
    source: MutationSource,
    baseline: Sequence[SettledOutcome],
    current: Sequence[SettledOutcome],
    thresholds: DriftThresholds,
    window: DriftWindow,
    min_current_sample: int = 3,
) -> List[AlertRecord]:
    """Alerts for one source. Thin windows are skipped rather than alerted on."""
    if len(baseline) < thresholds.min_sample_size or len(current) < min_current_sample:
        logger.info(
            "drift_skip source=%s baseline=%s current=%s min_sample=%s",
            source.value,
            len(baseline),
            len(current),
            thresholds.min_sample_size,
        )
        return []

    label = source.value.upper()
    alerts: List[AlertRecord] = []

    baseline_win_rate = win_rate(baseline)
    current_win_rate = win_rate(current)
    win_change = change_pct(baseline_win_rate, current_win_rate)
    if win_change < -thresholds.win_rate_drop_pct:
        alerts.append(
            AlertRecord(
                alert_type=AlertType.WIN_RATE_DROP,
                mutation_source=source,
                severity=_severity(win_change, thresholds),
                metric_name="win_rate",
                baseline_value=round(baseline_win_rate, 4),
                current_value=round(current_win_rate, 4),
                change_pct=round(win_change, 2),
                threshold_pct=thresholds.win_rate_drop_pct,
                sample_size=len(current),
                period_start=window.current_start,
                period_end=window.end,
                message=(
                    f"{label} win_rate dropped {abs(win_change):.1f}% "
                    f"({baseline_win_rate * 100:.1f}% → {current_win_rate * 100:.1f}%) "
                    f"in last {window.current_days:.0f} days"
                ),
            )
        )

    current_roas = positive_roas(current)
    baseline_avg_roas = _average(positive_roas(baseline))
    current_avg_roas = _average(current_roas)
    roas_change = change_pct(baseline_avg_roas, current_avg_roas)
    if roas_change < -thresholds.roas_drop_pct:
        alerts.append(
            AlertRecord(
                alert_type=AlertType.ROAS_DROP,
                mutation_source=source,
                severity=_severity(roas_change, thresholds),
                metric_name="avg_roas",
                baseline_value=round(baseline_avg_roas, 4),
                current_value=round(current_avg_roas, 4),
                change_pct=round(roas_change, 2),
                threshold_pct=thresholds.roas_drop_pct,
                sample_size=len(current_roas),
                period_start=window.current_start,
                period_end=window.end,
                message=(
                    f"{label} avg ROAS dropped {abs(roas_change):.1f}% "
                    f"({baseline_avg_roas:.2f} → {current_avg_roas:.2f}) "
                    f"in last {window.current_days:.0f} days"
                ),
            )
        )

    # Expected current-window volume, scaled from the baseline's daily rate.
    expected = len(baseline) / window.baseline_days * window.current_days
    if expected > VOLUME_MIN_EXPECTED and len(current) < expected * VOLUME_DROP_RATIO:
        alerts.append(
            AlertRecord(
                alert_type=AlertType.VOLUME_ANOMALY,
                mutation_source=source,
                severity=AlertSeverity.WARNING,
                metric_name="mutation_volume",
                baseline_value=round(expected, 2),
                current_value=float(len(current)),
                change_pct=round(change_pct(expected, len(current)), 2),
                threshold_pct=(1 - VOLUME_DROP_RATIO) * 100,
                sample_size=len(current),
                period_start=window.current_start,
                period_end=window.end,
                message=(
                    f"{label} mutation volume dropped significantly "
                    f"(expected ~{expected:.0f}, got {len(current)})"
                ),
            )
        )
    return alerts


Samples = Tuple[Sequence[SettledOutcome], Sequence[SettledOutcome]]


def evaluate_drift(
    samples: Mapping[MutationSource, Samples],
    window: DriftWindow,
    table: Optional[ThresholdTable] = None,
    min_current_sample: int = 3,
) -> List[AlertRecord]:
    """Evaluate every source present in samples, in DRIFT_SOURCES order."""
    table = table or ThresholdTable()
    alerts: List[AlertRecord] = []
    for source in DRIFT_SOURCES:
        if source not in samples:
            continue
        baseline, current = samples[source]
        alerts.extend(
            evaluate_source_drift(
                source,
                baseline,
                current,
                table.for_source(source),
                window,
                min_current_sample=min_current_sample,
            )
        )
    return alerts


async def fetch_settled_outcomes(
    db: AsyncSession,
    source: MutationSource,
    start: datetime,
    end: datetime,
) -> List[SettledOutcome]:
    """Settled events with outcome metrics created in [start, end); GLOBAL is unfiltered."""
    query = select(MutationEvent.outcome_class, MutationEvent.outcome_metrics).where(
        MutationEvent.created_at >= start,
        MutationEvent.created_at < end,
        MutationEvent.settled_at.is_not(None),
        MutationEvent.outcome_metrics.is_not(None),
    )
    if source is not MutationSource.GLOBAL:
        query = query.where(MutationEvent.mutation_source == source.value)
    result = await db.execute(query)
    return [SettledOutcome.from_row(outcome_class, metrics) for outcome_class, metrics in result.all()]


async def _fetch_source_samples(
    session_maker: async_sessionmaker,
    source: MutationSource,
    window: DriftWindow,
) -> Samples:
    async with session_maker() as db:
        baseline = await fetch_settled_outcomes(db, source, window.baseline_start, window.current_start)
        current = await fetch_settled_outcomes(db, source, window.current_start, window.end)
    return baseline, current


async def collect_samples(
    session_maker: async_sessionmaker,
    window: DriftWindow,
    sources: Sequence[MutationSource] = DRIFT_SOURCES,
) -> Tuple[Dict[MutationSource, Samples], List[str]]:
    """
    Query all sources concurrently, one session each.

    A failing source is logged and left out of the result so the others
    still get evaluated. Returns (samples, failed_source_names).
    """
    results = await asyncio.gather(
        *(_fetch_source_samples(session_maker, source, window) for source in sources),
        return_exceptions=True,
    )
    samples: Dict[MutationSource, Samples] = {}
    failed: List[str] = []
    for source, result in zip(sources, results):
        if isinstance(result, BaseException):
            logger.error(
                "drift_source_query_failed source=%s error=%s",
                source.value,
                result,
                exc_info=result,
            )
            failed.append(source.value)
            continue
        baseline, current = result
        logger.info("drift_samples source=%s baseline=%s current=%s", source.value, len(baseline), len(current))
        samples[source] = result
    return samples, failed


async def persist_alerts(session_maker: async_sessionmaker, alerts: Sequence[AlertRecord]) -> int:
    """Insert every alert of one run in a single transaction."""
    if not alerts:
        return 0
    created_at = datetime.now(timezone.utc)
    async with session_maker() as db:
        db.add_all(
            [
                MutationAlert(
                    id=str(uuid.uuid4()),
                    alert_type=alert.alert_type.value,
                    mutation_source=alert.mutation_source.db_value,
                    severity=alert.severity.value,
                    metric_name=alert.metric_name,
                    baseline_value=alert.baseline_value,
                    current_value=alert.current_value,
                    change_pct=alert.change_pct,
                    threshold_pct=alert.threshold_pct,
                    sample_size=alert.sample_size,
                    period_start=alert.period_start,
                    period_end=alert.period_end,
                    message=alert.message,
                    created_at=created_at,
                )
                for alert in alerts
            ]
        )
        await db.commit()
    return len(alerts)


Notifier = Callable[[Sequence[AlertRecord]], Awaitable[bool]]


async def run_drift_check_service(
    *,
    session_maker: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
    table: Optional[ThresholdTable] = None,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    """
    One drift check over all sources.

    Neither a failed alert insert nor a failed notification fails the run:
    both are logged and the computed alerts are returned.
    """
    session_maker = session_maker or async_session_maker
    notifier = notifier or send_alert_digest
    checked_at = as_utc(now or datetime.now(timezone.utc))
    window = DriftWindow.ending_at(
        checked_at,
        baseline_days=int(settings.DRIFT_BASELINE_DAYS),
        current_days=int(settings.DRIFT_CURRENT_DAYS),
    )
    table = table or ThresholdTable.from_settings()

    samples, failed_sources = await collect_samples(session_maker, window)
    alerts = evaluate_drift(
        samples,
        window,
        table=table,
        min_current_sample=int(settings.DRIFT_MIN_CURRENT_SAMPLE),
    )
    persisted = 0
    try:
        persisted = await persist_alerts(session_maker, alerts)
    except Exception:
        logger.exception("drift_alert_persist_failed alerts=%s", len(alerts))

    notified = False
    if alerts:
        try:
            notified = await notifier(alerts)
        except Exception as exc:
            logger.warning("drift_notification_failed alerts=%s error=%s", len(alerts), exc)

    logger.info(
        "drift_check_complete alerts=%s critical=%s failed_sources=%s",
        len(alerts),
        sum(1 for alert in alerts if alert.severity is AlertSeverity.CRITICAL),
        ",".join(failed_sources) or "-",
    )
    return {
        "success": True,
        "alerts_triggered": len(alerts),
        "alerts": [alert.to_json() for alert in alerts],
        "checked_at": checked_at.isoformat(),
        "failed_sources": failed_sources,
        "persisted": persisted,
        "notified": notified,
    }


def process_drift_check_job() -> Dict[str, Any]:
    """RQ worker entrypoint for scheduled drift checks."""
    return asyncio.run(run_drift_check_service())


def serialize_alert(alert: MutationAlert) -> Dict[str, Any]:
    return {
        "id": alert.id,
        "alert_type": alert.alert_type,
        "mutation_source": alert.mutation_source,
        "severity": alert.severity,
        "metric_name": alert.metric_name,
        "baseline_value": alert.baseline_value,
        "current_value": alert.current_value,
        "change_pct": alert.change_pct,
        "threshold_pct": alert.threshold_pct,
        "sample_size": alert.sample_size,
        "period_start": alert.period_start.isoformat() if alert.period_start else None,
        "period_end": alert.period_end.isoformat() if alert.period_end else None,
        "message": alert.message,
        "created_at": alert.created_at.isoformat() if alert.created_at else None,
    }


async def list_alerts_service(
    *,
    db: AsyncSession,
    severity: Optional[str] = None,
    source: Optional[str] = None,
    limit: int = 50,
) -> Dict[str, Any]:
    query = select(MutationAlert)
    if severity:
        try:
            query = query.where(MutationAlert.severity == AlertSeverity(severity.strip().lower()).value)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail="severity must be warning or critical") from exc
    if source:
        try:
            resolved = MutationSource(source.strip().lower())
        except ValueError as exc:
            raise HTTPException(
                status_code=422,
                detail="source must be exploit, explore, regret_avoidance, or global",
            ) from exc
        if resolved is MutationSource.GLOBAL:
            query = query.where(MutationAlert.mutation_source.is_(None))
        else:
            query = query.where(MutationAlert.mutation_source == resolved.value)
    result = await db.execute(query.order_by(MutationAlert.created_at.desc()).limit(max(min(int(limit), 200), 1)))
    alerts = result.scalars().all()
    return {"count": len(alerts), "alerts": [serialize_alert(alert) for alert in alerts]}
