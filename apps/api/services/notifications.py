"""Alert digest delivery to a Slack-compatible incoming webhook."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from config import settings
from services.mutation_types import AlertRecord, AlertSeverity

logger = logging.getLogger(__name__)


def _section(title: str, alerts: Sequence[AlertRecord]) -> Dict[str, Any]:
    lines = "\n".join(f"• {alert.message}" for alert in alerts)
    return {"type": "section", "text": {"type": "mrkdwn", "text": f"*{title}*\n{lines}"}}


def build_alert_digest(alerts: Sequence[AlertRecord]) -> Dict[str, Any]:
    """One message per run: a header, then critical and warning sections when non-empty."""
    critical = [alert for alert in alerts if alert.severity is AlertSeverity.CRITICAL]
    warning = [alert for alert in alerts if alert.severity is AlertSeverity.WARNING]

    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"Mutation Engine Alerts ({len(alerts)} total)"},
        }
    ]
    if critical:
        blocks.append(_section(f"Critical ({len(critical)})", critical))
    if warning:
        blocks.append(_section(f"Warning ({len(warning)})", warning))
    return {"text": f"Mutation Engine Alerts ({len(alerts)} total)", "blocks": blocks}


async def send_alert_digest(
    alerts: Sequence[AlertRecord],
    webhook_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Post the digest. Returns False (and logs) instead of raising on delivery failure."""
    url = (webhook_url if webhook_url is not None else settings.SLACK_WEBHOOK_URL).strip()
    if not alerts:
        return False
    if not url:
        logger.info("alert_digest_skipped reason=no_webhook alerts=%s", len(alerts))
        return False

    payload = build_alert_digest(alerts)
    try:
        if client is not None:
            response = await client.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=float(settings.NOTIFICATION_TIMEOUT_SECONDS)) as http:
                response = await http.post(url, json=payload)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("alert_digest_failed alerts=%s error=%s", len(alerts), exc)
        return False

    logger.info("alert_digest_sent alerts=%s status=%s", len(alerts), response.status_code)
    return True
