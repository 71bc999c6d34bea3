import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from models.mutation_alert import MutationAlert
from models.mutation_event import MutationEvent
from models.user import User
from services import drift_detector
from services.drift_detector import (
    DEFAULT_THRESHOLDS,
    DriftWindow,
    ThresholdTable,
    evaluate_drift,
    evaluate_source_drift,
    run_drift_check_service,
)
from services.mutation_types import (
    AlertSeverity,
    AlertType,
    MutationSource,
    OutcomeClass,
    OutcomeMetrics,
    SettledOutcome,
)


NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
WINDOW = DriftWindow.ending_at(NOW)
EXPLOIT = DEFAULT_THRESHOLDS[MutationSource.EXPLOIT]


def _outcomes(total, wins=0, roas=None):
    return [
        SettledOutcome(
            outcome_class=OutcomeClass.WIN if index < wins else OutcomeClass.LOSS,
            metrics=OutcomeMetrics(roas=roas),
        )
        for index in range(total)
    ]


def test_window_bounds():
    assert WINDOW.baseline_start == NOW - timedelta(days=30)
    assert WINDOW.current_start == NOW - timedelta(days=7)
    assert WINDOW.baseline_days == pytest.approx(23)
    assert WINDOW.current_days == pytest.approx(7)
    with pytest.raises(ValueError):
        DriftWindow.ending_at(NOW, baseline_days=7, current_days=7)


def test_win_rate_drop_fires_warning():
    alerts = evaluate_source_drift(
        MutationSource.EXPLOIT,
        baseline=_outcomes(20, wins=10),
        current=_outcomes(5, wins=2),
        thresholds=EXPLOIT,
        window=WINDOW,
    )

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.alert_type is AlertType.WIN_RATE_DROP
    assert alert.severity is AlertSeverity.WARNING
    assert alert.change_pct == pytest.approx(-20.0)
    assert alert.threshold_pct == 15.0
    assert alert.sample_size == 5
    assert alert.period_start == WINDOW.current_start
    assert alert.period_end == NOW
    assert alert.message == "EXPLOIT win_rate dropped 20.0% (50.0% → 40.0%) in last 7 days"


def test_win_rate_drop_escalates_to_critical():
    alerts = evaluate_source_drift(
        MutationSource.EXPLOIT,
        baseline=_outcomes(20, wins=10),
        current=_outcomes(10, wins=3),
        thresholds=EXPLOIT,
        window=WINDOW,
    )

    assert [alert.severity for alert in alerts] == [AlertSeverity.CRITICAL]
    assert alerts[0].change_pct == pytest.approx(-40.0)


def test_explore_tolerates_the_same_drop():
    alerts = evaluate_source_drift(
        MutationSource.EXPLORE,
        baseline=_outcomes(20, wins=10),
        current=_outcomes(5, wins=2),
        thresholds=DEFAULT_THRESHOLDS[MutationSource.EXPLORE],
        window=WINDOW,
    )
    assert alerts == []


@pytest.mark.parametrize("baseline_size,current_size", [(9, 5), (20, 2)])
def test_insufficient_data_is_skipped(baseline_size, current_size):
    alerts = evaluate_source_drift(
        MutationSource.EXPLOIT,
        baseline=_outcomes(baseline_size, wins=baseline_size),
        current=_outcomes(current_size, wins=0),
        thresholds=EXPLOIT,
        window=WINDOW,
    )
    assert alerts == []


def test_roas_drop_uses_positive_values_only():
    current = _outcomes(5, roas=1.0) + _outcomes(3, roas=-2.0)
    alerts = evaluate_source_drift(
        MutationSource.EXPLOIT,
        baseline=_outcomes(20, roas=2.0),
        current=current,
        thresholds=EXPLOIT,
        window=WINDOW,
    )

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.alert_type is AlertType.ROAS_DROP
    assert alert.severity is AlertSeverity.CRITICAL
    assert alert.baseline_value == pytest.approx(2.0)
    assert alert.current_value == pytest.approx(1.0)
    assert alert.sample_size == 5
    assert alert.message == "EXPLOIT avg ROAS dropped 50.0% (2.00 → 1.00) in last 7 days"


def test_volume_anomaly_when_generation_collapses():
    # 66 events over 23 days is ~20 per week.
    alerts = evaluate_source_drift(
        MutationSource.EXPLOIT,
        baseline=_outcomes(66),
        current=_outcomes(4),
        thresholds=EXPLOIT,
        window=WINDOW,
    )

    assert len(alerts) == 1
    alert = alerts[0]
    assert alert.alert_type is AlertType.VOLUME_ANOMALY
    assert alert.severity is AlertSeverity.WARNING
    assert alert.metric_name == "mutation_volume"
    assert alert.threshold_pct == pytest.approx(70.0)
    assert alert.message == "EXPLOIT mutation volume dropped significantly (expected ~20, got 4)"


def test_global_alerts_serialize_with_null_source():
    alerts = evaluate_drift(
        {MutationSource.GLOBAL: (_outcomes(30, wins=15), _outcomes(10, wins=2))},
        WINDOW,
    )

    assert len(alerts) == 1
    assert alerts[0].mutation_source is MutationSource.GLOBAL
    assert alerts[0].to_json()["mutation_source"] is None
    assert alerts[0].message.startswith("GLOBAL win_rate dropped")


def test_threshold_overrides_merge_onto_defaults():
    table = ThresholdTable.from_json('{"explore": {"win_rate_drop_pct": 10, "min_sample_size": 5}}')

    explore = table.for_source(MutationSource.EXPLORE)
    assert explore.win_rate_drop_pct == 10.0
    assert explore.min_sample_size == 5
    assert explore.roas_drop_pct == 30.0
    assert table.for_source(MutationSource.EXPLOIT) == EXPLOIT


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2]",
        '{"paid_social": {}}',
        '{"exploit": {"unknown_field": 1}}',
        '{"exploit": 3}',
        '{"exploit": {"win_rate_drop_pct": null}}',
        '{"explore": {"min_sample_size": "many"}}',
    ],
)
def test_malformed_threshold_overrides_are_rejected(raw):
    with pytest.raises(ValueError):
        ThresholdTable.from_json(raw)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'drift.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        session.add(User(id="drift-user", email="drift-user@local.invalid"))
        await session.commit()
    yield maker
    await engine.dispose()


async def _seed_events(maker, source, created_at, total, wins, settled=True):
    async with maker() as session:
        for index in range(total):
            outcome_class = "win" if index < wins else "loss"
            session.add(
                MutationEvent(
                    id=str(uuid.uuid4()),
                    user_id="drift-user",
                    creative_id=f"creative-{index}",
                    platform="meta",
                    base_style_cluster="bold",
                    mutation_key="platform:meta",
                    mutations=[],
                    mutation_source=source,
                    mutation_score=0.5,
                    outcome_class=outcome_class if settled else "pending",
                    outcome_metrics={"roas": 1.2} if settled else None,
                    settled_at=created_at + timedelta(hours=1) if settled else None,
                    created_at=created_at,
                )
            )
        await session.commit()


@pytest_asyncio.fixture
async def exploit_drop(session_maker):
    now = datetime.now(timezone.utc)
    await _seed_events(session_maker, "exploit", now - timedelta(days=10), total=20, wins=10)
    await _seed_events(session_maker, "exploit", now - timedelta(days=2), total=5, wins=2)
    await _seed_events(session_maker, "exploit", now - timedelta(days=1), total=6, wins=0, settled=False)
    return now


@pytest.mark.asyncio
async def test_drift_run_persists_alerts_and_notifies(session_maker, exploit_drop):
    notifier = AsyncMock(return_value=True)

    result = await run_drift_check_service(session_maker=session_maker, now=exploit_drop, notifier=notifier)

    assert result["success"] is True
    assert result["alerts_triggered"] == 1
    assert result["alerts"][0]["alert_type"] == "win_rate_drop"
    assert result["alerts"][0]["mutation_source"] == "exploit"
    assert result["alerts"][0]["sample_size"] == 5
    assert result["failed_sources"] == []
    assert result["notified"] is True
    notifier.assert_awaited_once()

    async with session_maker() as session:
        stored = (await session.execute(select(MutationAlert))).scalars().all()
    assert len(stored) == 1
    assert stored[0].severity == "warning"
    assert stored[0].mutation_source == "exploit"


@pytest.mark.asyncio
async def test_quiet_run_skips_notification(session_maker):
    notifier = AsyncMock(return_value=True)

    result = await run_drift_check_service(session_maker=session_maker, notifier=notifier)

    assert result["alerts_triggered"] == 0
    assert result["alerts"] == []
    assert "checked_at" in result
    notifier.assert_not_awaited()


@pytest.mark.asyncio
async def test_failing_source_does_not_block_others(session_maker, exploit_drop):
    original = drift_detector.fetch_settled_outcomes

    async def flaky_fetch(db, source, start, end):
        if source is MutationSource.EXPLORE:
            raise RuntimeError("explore query timed out")
        return await original(db, source, start, end)

    with patch("services.drift_detector.fetch_settled_outcomes", new=flaky_fetch):
        result = await run_drift_check_service(
            session_maker=session_maker,
            now=exploit_drop,
            notifier=AsyncMock(return_value=False),
        )

    assert result["failed_sources"] == ["explore"]
    assert [alert["mutation_source"] for alert in result["alerts"]] == ["exploit"]


@pytest.mark.asyncio
async def test_notification_failure_keeps_alerts(session_maker, exploit_drop):
    notifier = AsyncMock(side_effect=RuntimeError("webhook down"))

    result = await run_drift_check_service(session_maker=session_maker, now=exploit_drop, notifier=notifier)

    assert result["alerts_triggered"] == 1
    assert result["notified"] is False
    async with session_maker() as session:
        count = (await session.execute(select(func.count()).select_from(MutationAlert))).scalar_one()
    assert count == 1


@pytest.mark.asyncio
async def test_persist_failure_still_returns_alerts(session_maker, exploit_drop):
    with patch("services.drift_detector.persist_alerts", new=AsyncMock(side_effect=RuntimeError("db locked"))):
        result = await run_drift_check_service(
            session_maker=session_maker,
            now=exploit_drop,
            notifier=AsyncMock(return_value=True),
        )

    assert result["alerts_triggered"] == 1
    assert result["persisted"] == 0
