"""Durable image analysis job queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis import Redis
from rq import Queue, Retry
from rq.exceptions import NoSuchJobError
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.background_task import BackgroundTask


ANALYSIS_QUEUE_NAME = "analysis_jobs"
IN_PROGRESS_STATUSES = ("scheduled", "running")
PENDING_JOB_STATUSES = ("queued", "started", "deferred", "scheduled")

logger = logging.getLogger(__name__)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_analysis_queue() -> Queue:
    """Return the configured image analysis queue."""
    return Queue(
        name=ANALYSIS_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_image_analysis_job(
    task_id: str,
    image_url: str,
    product_id: Optional[str],
    revision_id: Optional[str],
    max_retries: int,
) -> Job:
    """Enqueue an analysis job. Attempts are counted inside the job; RQ retry covers worker crashes."""
    queue = get_analysis_queue()
    return queue.enqueue(
        "services.background.process_image_analysis_job",
        task_id,
        image_url,
        product_id,
        revision_id,
        max_retries,
        job_id=f"analysis:{task_id}",
        retry=Retry(max=1, interval=[30]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )


def is_queue_job_pending(job_id: str, connection: Redis) -> bool:
    """True while RQ still holds the job waiting or running."""
    try:
        job = Job.fetch(job_id, connection=connection)
    except NoSuchJobError:
        return False
    status = job.get_status()
    return getattr(status, "value", status) in PENDING_JOB_STATUSES


async def recover_stalled_background_tasks(max_age_minutes: int = 60) -> int:
    """Mark analyses left scheduled/running by a restart as failed, unless RQ still holds the job."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(BackgroundTask).where(
                BackgroundTask.status.in_(IN_PROGRESS_STATUSES),
                BackgroundTask.created_at < cutoff,
            )
        )
        stalled = []
        connection: Optional[Redis] = None
        for task in result.scalars().all():
            if task.queue_job_id:
                try:
                    connection = connection or get_redis_connection()
                    if is_queue_job_pending(task.queue_job_id, connection):
                        continue
                except Exception as exc:
                    logger.warning("Could not check queue job %s, leaving task %s: %s", task.queue_job_id, task.id, exc)
                    continue
            stalled.append(task)

        for task in stalled:
            task.status = "failed"
            task.last_error = "Background analysis was interrupted before completing."
            task.completed_at = datetime.now(timezone.utc)
        if stalled:
            await db.commit()
        return len(stalled)
