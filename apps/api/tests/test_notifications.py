import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from services.mutation_types import AlertRecord, AlertSeverity, AlertType, MutationSource
from services.notifications import build_alert_digest, send_alert_digest


NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)
WEBHOOK = "https://hooks.example.test/services/mutation-alerts"


def _alert(severity, message, source=MutationSource.EXPLOIT):
    return AlertRecord(
        alert_type=AlertType.WIN_RATE_DROP,
        mutation_source=source,
        severity=severity,
        metric_name="win_rate",
        baseline_value=0.5,
        current_value=0.3,
        change_pct=-40.0,
        threshold_pct=15.0,
        sample_size=10,
        period_start=NOW - timedelta(days=7),
        period_end=NOW,
        message=message,
    )


def test_digest_groups_alerts_by_severity():
    digest = build_alert_digest(
        [
            _alert(AlertSeverity.WARNING, "EXPLORE win_rate dropped 26.0%"),
            _alert(AlertSeverity.CRITICAL, "EXPLOIT win_rate dropped 40.0%"),
        ]
    )

    blocks = digest["blocks"]
    assert blocks[0]["text"]["text"] == "Mutation Engine Alerts (2 total)"
    assert len(blocks) == 3
    assert blocks[1]["text"]["text"] == "*Critical (1)*\n• EXPLOIT win_rate dropped 40.0%"
    assert blocks[2]["text"]["text"] == "*Warning (1)*\n• EXPLORE win_rate dropped 26.0%"


def test_digest_omits_empty_sections():
    digest = build_alert_digest([_alert(AlertSeverity.WARNING, "GLOBAL win_rate dropped 20.0%", MutationSource.GLOBAL)])

    assert len(digest["blocks"]) == 2
    assert digest["blocks"][1]["text"]["text"].startswith("*Warning (1)*")


@pytest.mark.asyncio
async def test_send_posts_digest_to_webhook():
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, text="ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await send_alert_digest([_alert(AlertSeverity.CRITICAL, "boom")], webhook_url=WEBHOOK, client=client)

    assert sent is True
    assert len(captured) == 1
    assert str(captured[0].url) == WEBHOOK
    body = json.loads(captured[0].content)
    assert body["blocks"][0]["text"]["text"] == "Mutation Engine Alerts (1 total)"


@pytest.mark.asyncio
async def test_send_reports_failure_without_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream error")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        sent = await send_alert_digest([_alert(AlertSeverity.WARNING, "meh")], webhook_url=WEBHOOK, client=client)

    assert sent is False


@pytest.mark.asyncio
async def test_send_is_skipped_without_webhook_or_alerts():
    assert await send_alert_digest([_alert(AlertSeverity.WARNING, "meh")], webhook_url="") is False
    assert await send_alert_digest([], webhook_url=WEBHOOK) is False
