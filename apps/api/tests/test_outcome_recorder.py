import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from models.creator_genome import CreatorGenome
from models.mutation_event import MutationEvent
from models.regret_entry import RegretEntry
from models.user import User
from services.drift_detector import fetch_settled_outcomes
from services.genome import apply_outcome_to_genome, genome_confidence, get_genome_service, raw_entropy
from services.mutation_types import MutationSource, OutcomeClass, OutcomeMetrics
from services.outcome_recorder import (
    classify_outcome,
    classify_regret,
    resulting_style,
    settle_mutation_event_service,
)


USER_ID = "settle-user"


@pytest.mark.parametrize(
    "rank_before,rank_after,roas,expected",
    [
        (5, 2, 0.1, OutcomeClass.WIN),
        (2, 5, 3.0, OutcomeClass.LOSS),
        (3, 3, 1.5, OutcomeClass.WIN),
        (None, None, 1.0, OutcomeClass.WIN),
        (None, None, 0.9, OutcomeClass.NEUTRAL),
        (None, None, 0.4, OutcomeClass.LOSS),
        (None, 4, None, OutcomeClass.NEUTRAL),
    ],
)
def test_classify_outcome(rank_before, rank_after, roas, expected):
    result = classify_outcome(
        rank_before=rank_before,
        rank_after=rank_after,
        metrics=OutcomeMetrics(roas=roas),
    )
    assert result is expected


def test_classify_regret_tiers():
    assert classify_regret(OutcomeMetrics(roas=-0.4), OutcomeClass.LOSS) == (1, 0.4, "negative_roi")
    assert classify_regret(OutcomeMetrics(roas=-3.0), OutcomeClass.LOSS) == (1, 1.0, "negative_roi")
    assert classify_regret(OutcomeMetrics(roas=0.5), OutcomeClass.LOSS) == (2, 0.5, "near_miss")
    assert classify_regret(OutcomeMetrics(roas=1.5, stability_score=0.2), OutcomeClass.WIN) == (3, 0.3, "unstable")
    assert classify_regret(OutcomeMetrics(roas=1.5, stability_score=0.9), OutcomeClass.WIN) is None
    assert classify_regret(OutcomeMetrics(roas=0.9), OutcomeClass.NEUTRAL) == (2, 0.5, "near_miss")
    assert classify_regret(OutcomeMetrics(roas=0.9, stability_score=0.1), OutcomeClass.NEUTRAL) == (2, 0.5, "near_miss")
    assert classify_regret(OutcomeMetrics(roas=0.4, stability_score=0.1), OutcomeClass.LOSS) == (2, 0.5, "near_miss")
    assert classify_regret(OutcomeMetrics(), OutcomeClass.NEUTRAL) == (2, 0.5, "near_miss")
    # a rank win keeps its negative ROAS out of tier 1
    assert classify_regret(OutcomeMetrics(roas=-0.2), OutcomeClass.WIN) is None


def test_genome_confidence_components():
    assert raw_entropy({}) == 0.0
    assert raw_entropy({"bold": 1, "minimalist": 1}) == pytest.approx(1.0)
    # volume 0.04 + profit 0.3 + collapsed-entropy 0.15
    assert genome_confidence(2, 2, 0.0) == pytest.approx(0.49)
    # volume capped at 0.4, moderate entropy earns the full 0.3
    assert genome_confidence(100, 50, 1.5) == pytest.approx(0.85)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settle.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with maker() as session:
        session.add(User(id=USER_ID, email=f"{USER_ID}@local.invalid"))
        await session.commit()
    yield maker
    await engine.dispose()


async def _pending_event(maker, **overrides) -> str:
    event_id = str(uuid.uuid4())
    fields = {
        "id": event_id,
        "user_id": USER_ID,
        "creative_id": "creative-1",
        "platform": "meta",
        "base_style_cluster": "bold",
        "mutation_key": "platform:meta",
        "mutations": [{"type": "platform_expansion", "param": "platform", "delta": "meta", "reason": "test"}],
        "mutation_source": "exploit",
        "mutation_score": 0.6,
        "rank_before": 3,
        "created_at": datetime.now(timezone.utc),
    }
    fields.update(overrides)
    async with maker() as session:
        session.add(MutationEvent(**fields))
        await session.commit()
    return event_id


@pytest.mark.asyncio
async def test_settlement_is_idempotent(session_maker):
    event_id = await _pending_event(session_maker, rank_before=None)

    async with session_maker() as db:
        first = await settle_mutation_event_service(
            user_id=USER_ID,
            event_id=event_id,
            payload={"outcome_metrics": {"roas": -0.5, "spend": 120}},
            db=db,
        )
    assert first["settled"] is True
    assert first["event"]["outcome_class"] == "loss"
    assert first["regret"]["tier"] == 1
    assert first["regret"]["severity"] == pytest.approx(0.5)

    window_start = datetime.now(timezone.utc) - timedelta(days=1)
    window_end = datetime.now(timezone.utc) + timedelta(days=1)
    async with session_maker() as db:
        drift_before = await fetch_settled_outcomes(db, MutationSource.EXPLOIT, window_start, window_end)
    assert [outcome.outcome_class for outcome in drift_before] == [OutcomeClass.LOSS]

    async with session_maker() as db:
        second = await settle_mutation_event_service(
            user_id=USER_ID,
            event_id=event_id,
            payload={"outcome_metrics": {"roas": 4.0}, "outcome_class": "win"},
            db=db,
        )
    assert second["settled"] is False
    assert second["already_settled"] is True
    assert second["event"]["outcome_class"] == "loss"

    async with session_maker() as db:
        drift_after = await fetch_settled_outcomes(db, MutationSource.EXPLOIT, window_start, window_end)
    assert drift_after == drift_before

    async with session_maker() as db:
        genome = (await db.execute(select(CreatorGenome).where(CreatorGenome.user_id == USER_ID))).scalar_one()
        regrets = (await db.execute(select(func.count()).select_from(RegretEntry))).scalar_one()
    assert genome.total_creatives == 1
    assert genome.profitable_creatives == 0
    assert genome.platform_success["meta"]["total"] == 1
    assert genome.platform_success["meta"]["wins"] == 0
    assert regrets == 1


@pytest.mark.asyncio
async def test_rank_improvement_settles_as_win_and_feeds_genome(session_maker):
    event_id = await _pending_event(
        session_maker,
        mutations=[
            {"type": "platform_expansion", "param": "platform", "delta": "meta", "reason": "test"},
            {"type": "style_shift", "param": "style_cluster", "delta": "minimalist", "reason": "test"},
        ],
    )

    async with session_maker() as db:
        result = await settle_mutation_event_service(
            user_id=USER_ID,
            event_id=event_id,
            payload={"outcome_metrics": {"roas": 2.0, "stability_score": 0.9}, "rank_after": 1},
            db=db,
        )
    assert result["event"]["outcome_class"] == "win"
    assert result["event"]["rank_after"] == 1
    assert result["event"]["settled_at"] is not None
    assert result["regret"] is None

    async with session_maker() as db:
        genome = await get_genome_service(user_id=USER_ID, db=db)
    assert genome["exists"] is True
    assert genome["total_creatives"] == 1
    assert genome["profitable_creatives"] == 1
    assert genome["style_clusters"] == {"minimalist": 1.0}
    assert genome["platform_success"]["meta"] == {"wins": 1, "total": 1, "avg_roas": 2.0}
    assert genome["top_platform"] == "meta"


@pytest.mark.asyncio
async def test_unknown_event_is_404(session_maker):
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await settle_mutation_event_service(
                user_id=USER_ID,
                event_id="missing",
                payload={"outcome_metrics": {"roas": 1.0}},
                db=db,
            )
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_events_are_scoped_to_their_owner(session_maker):
    event_id = await _pending_event(session_maker)
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await settle_mutation_event_service(
                user_id="another-user",
                event_id=event_id,
                payload={"outcome_metrics": {"roas": 1.0}},
                db=db,
            )
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"outcome_metrics": {}}, {"outcome_metrics": {"roas": 1}, "outcome_class": "pending"}])
async def test_invalid_settlement_payload_is_422(session_maker, payload):
    event_id = await _pending_event(session_maker)
    async with session_maker() as db:
        with pytest.raises(HTTPException) as exc_info:
            await settle_mutation_event_service(user_id=USER_ID, event_id=event_id, payload=payload, db=db)
    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_genome_roas_is_an_exponential_moving_average(session_maker):
    async with session_maker() as db:
        await apply_outcome_to_genome(
            user_id=USER_ID,
            platform="Meta",
            style_cluster="bold",
            metrics=OutcomeMetrics(roas=2.0),
            is_profitable=True,
            db=db,
        )
        genome = await apply_outcome_to_genome(
            user_id=USER_ID,
            platform="meta",
            style_cluster="bold",
            metrics=OutcomeMetrics(roas=1.0),
            is_profitable=True,
            db=db,
        )
        await db.commit()

    assert genome.platform_success["meta"]["avg_roas"] == pytest.approx(1.8)
    assert genome.platform_success["meta"]["wins"] == 2
    assert genome.total_creatives == 2
    assert genome.genome_confidence == pytest.approx(0.49)


def test_resulting_style_reads_last_style_mutation():
    event = MutationEvent(
        base_style_cluster="bold",
        mutations=[
            {"type": "style_shift", "param": "style_cluster", "delta": "playful"},
            {"type": "cta_variant", "param": "cta_text", "delta": "Try Free"},
        ],
    )
    assert resulting_style(event) == "playful"
    assert resulting_style(MutationEvent(base_style_cluster="bold", mutations=[])) == "bold"


@pytest.mark.asyncio
async def test_unstable_win_counts_for_platform_but_not_confidence(session_maker):
    event_id = await _pending_event(session_maker, rank_before=None)

    async with session_maker() as db:
        result = await settle_mutation_event_service(
            user_id=USER_ID,
            event_id=event_id,
            payload={"outcome_metrics": {"roas": 1.4, "stability_score": 0.2}},
            db=db,
        )
    assert result["event"]["outcome_class"] == "win"
    assert result["regret"]["tier"] == 3
    assert result["regret"]["severity"] == pytest.approx(0.3)

    async with session_maker() as db:
        genome = await get_genome_service(user_id=USER_ID, db=db)
    assert genome["total_creatives"] == 1
    assert genome["profitable_creatives"] == 0
    assert genome["platform_success"]["meta"]["wins"] == 1


@pytest.mark.asyncio
async def test_neutral_settlement_records_near_miss_regret(session_maker):
    event_id = await _pending_event(session_maker, rank_before=None)

    async with session_maker() as db:
        result = await settle_mutation_event_service(
            user_id=USER_ID,
            event_id=event_id,
            payload={"outcome_metrics": {"roas": 0.9}},
            db=db,
        )
    assert result["event"]["outcome_class"] == "neutral"
    assert result["regret"]["tier"] == 2
    assert result["regret"]["severity"] == pytest.approx(0.5)
