"""Durable drift-check job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timezone

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


DRIFT_QUEUE_NAME = "drift_checks"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_drift_queue() -> Queue:
    """Return the configured drift-check queue."""
    return Queue(
        name=DRIFT_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_drift_check_job() -> Job:
    """Enqueue a drift check with retry/timeouts for durability."""
    queue = get_drift_queue()
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M")
    return queue.enqueue(
        "services.drift_detector.process_drift_check_job",
        job_id=f"drift:{stamp}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )
