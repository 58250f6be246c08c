"""Fire-and-forget image analysis with durable outcome rows."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.background_task import BackgroundTask
from services.image_analysis import analyze_product_image

logger = logging.getLogger(__name__)

TASK_NAME = "image_analysis"

AnalysisFn = Callable[..., Awaitable[Any]]

# event loop only keeps weak references to tasks
_running_tasks: Set[asyncio.Task] = set()


async def _create_task_row(
    *,
    product_id: Optional[str],
    user_id: Optional[str],
    max_attempts: int,
) -> Optional[str]:
    """Returns the new row id, or None when the row could not be written."""
    task_id = str(uuid.uuid4())
    try:
        async with async_session_maker() as db:
            db.add(
                BackgroundTask(
                    id=task_id,
                    task_name=TASK_NAME,
                    user_id=user_id,
                    product_idea_id=product_id,
                    status="scheduled",
                    attempts=0,
                    max_attempts=max_attempts,
                )
            )
            await db.commit()
    except Exception:
        logger.exception("Could not record background task for product %s", product_id)
        return None
    return task_id


async def _update_task_row(task_id: Optional[str], **fields: Any) -> None:
    """Status writes never raise; a lost status update is logged only."""
    if task_id is None:
        return
    try:
        async with async_session_maker() as db:
            result = await db.execute(select(BackgroundTask).where(BackgroundTask.id == task_id))
            task = result.scalar_one_or_none()
            if not task:
                return
            for key, value in fields.items():
                setattr(task, key, value)
            await db.commit()
    except Exception:
        logger.exception("Could not update background task %s", task_id)


async def run_analysis_attempts(
    task_id: Optional[str],
    image_url: str,
    *,
    product_id: Optional[str],
    revision_id: Optional[str] = None,
    max_attempts: int = 1,
    retry_delay_ms: int = 0,
    analysis: Optional[AnalysisFn] = None,
) -> bool:
    """Run the analysis up to max_attempts times with a fixed delay. Returns success."""
    analyze = analysis or analyze_product_image
    attempts = max(int(max_attempts), 1)
    last_error = ""
    for attempt in range(1, attempts + 1):
        await _update_task_row(task_id, status="running", attempts=attempt)
        try:
            await analyze(image_url, product_id=product_id, revision_id=revision_id)
        except Exception as exc:
            last_error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Background analysis %s for product %s failed (attempt %s/%s): %s",
                task_id,
                product_id,
                attempt,
                attempts,
                last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(max(retry_delay_ms, 0) / 1000)
            continue

        await _update_task_row(
            task_id,
            status="succeeded",
            last_error=None,
            completed_at=datetime.now(timezone.utc),
        )
        logger.info("Background analysis %s for product %s succeeded", task_id, product_id)
        return True

    logger.error(
        "Background analysis %s for product %s gave up after %s attempts: %s",
        task_id,
        product_id,
        attempts,
        last_error,
    )
    await _update_task_row(
        task_id,
        status="failed",
        last_error=last_error[:1000],
        completed_at=datetime.now(timezone.utc),
    )
    return False


def _spawn(coro: Awaitable[Any]) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    _running_tasks.add(task)
    task.add_done_callback(_running_tasks.discard)
    return task


async def _dispatch(
    product_id: Optional[str],
    image_url: str,
    *,
    user_id: Optional[str],
    revision_id: Optional[str],
    max_retries: int,
    retry_delay_ms: int,
    analysis: Optional[AnalysisFn],
) -> Optional[str]:
    max_attempts = 1 + max(int(max_retries), 0)
    task_id = await _create_task_row(product_id=product_id, user_id=user_id, max_attempts=max_attempts)

    # a queued job needs its row; without one the analysis still runs, untracked
    if task_id and settings.BACKGROUND_ANALYSIS_MODE == "queue" and analysis is None:
        from services.analysis_queue import enqueue_image_analysis_job

        try:
            job = enqueue_image_analysis_job(task_id, image_url, product_id, revision_id, max_retries)
        except Exception as exc:
            logger.warning("Analysis queue unavailable, running task %s inline: %s", task_id, exc)
        else:
            await _update_task_row(task_id, queue_job_id=job.id)
            return task_id

    _spawn(
        run_analysis_attempts(
            task_id,
            image_url,
            product_id=product_id,
            revision_id=revision_id,
            max_attempts=max_attempts,
            retry_delay_ms=retry_delay_ms,
            analysis=analysis,
        )
    )
    return task_id


async def trigger_background_analysis(
    product_id: Optional[str],
    image_url: str,
    *,
    user_id: Optional[str] = None,
    revision_id: Optional[str] = None,
    analysis: Optional[AnalysisFn] = None,
) -> Optional[str]:
    """Schedule one analysis attempt and return its task id (None if untracked) without waiting."""
    return await _dispatch(
        product_id,
        image_url,
        user_id=user_id,
        revision_id=revision_id,
        max_retries=0,
        retry_delay_ms=0,
        analysis=analysis,
    )


async def trigger_background_analysis_with_retry(
    product_id: Optional[str],
    image_url: str,
    *,
    max_retries: Optional[int] = None,
    retry_delay_ms: Optional[int] = None,
    user_id: Optional[str] = None,
    revision_id: Optional[str] = None,
    analysis: Optional[AnalysisFn] = None,
) -> Optional[str]:
    """Like trigger_background_analysis, retrying failures with a fixed delay."""
    return await _dispatch(
        product_id,
        image_url,
        user_id=user_id,
        revision_id=revision_id,
        max_retries=settings.BACKGROUND_ANALYSIS_MAX_RETRIES if max_retries is None else max_retries,
        retry_delay_ms=settings.BACKGROUND_ANALYSIS_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms,
        analysis=analysis,
    )


async def trigger_batch_background_analysis(
    requests: Sequence[Dict[str, Any]],
    *,
    user_id: Optional[str] = None,
    with_retry: bool = True,
    analysis: Optional[AnalysisFn] = None,
) -> List[Optional[str]]:
    """Dispatch each request independently; task ids come back in request order."""
    trigger = trigger_background_analysis_with_retry if with_retry else trigger_background_analysis
    task_ids: List[Optional[str]] = []
    for index, request in enumerate(requests):
        try:
            task_id = await trigger(
                request.get("product_id"),
                request["image_url"],
                user_id=user_id,
                revision_id=request.get("revision_id"),
                analysis=analysis,
            )
        except Exception:
            logger.exception("Could not dispatch background analysis %s of %s", index + 1, len(requests))
            task_id = None
        task_ids.append(task_id)
    return task_ids


async def wait_for_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for in-process analyses still running (shutdown and tests)."""
    if not _running_tasks:
        return
    await asyncio.wait(set(_running_tasks), timeout=timeout)


async def get_background_task(task_id: str) -> Optional[BackgroundTask]:
    async with async_session_maker() as db:
        result = await db.execute(select(BackgroundTask).where(BackgroundTask.id == task_id))
        return result.scalar_one_or_none()


def serialize_background_task(task: BackgroundTask) -> Dict[str, Any]:
    return {
        "id": task.id,
        "task_name": task.task_name,
        "product_id": task.product_idea_id,
        "status": task.status,
        "attempts": int(task.attempts or 0),
        "max_attempts": int(task.max_attempts or 0),
        "last_error": task.last_error,
        "queue_job_id": task.queue_job_id,
        "created_at": task.created_at.isoformat() if task.created_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


async def process_image_analysis_job_async(
    task_id: str,
    image_url: str,
    product_id: Optional[str],
    revision_id: Optional[str],
    max_retries: int,
) -> bool:
    return await run_analysis_attempts(
        task_id,
        image_url,
        product_id=product_id,
        revision_id=revision_id,
        max_attempts=1 + max(int(max_retries), 0),
        retry_delay_ms=settings.BACKGROUND_ANALYSIS_RETRY_DELAY_MS,
    )


def process_image_analysis_job(
    task_id: str,
    image_url: str,
    product_id: Optional[str],
    revision_id: Optional[str],
    max_retries: int,
) -> bool:
    """RQ worker entrypoint for image analysis jobs."""
    return asyncio.run(process_image_analysis_job_async(task_id, image_url, product_id, revision_id, max_retries))
