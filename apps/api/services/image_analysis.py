"""Cached vision analysis of product images."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.image_analysis import ImageAnalysisCache
from multimodal import vision

logger = logging.getLogger(__name__)


def image_hash(image_url: str) -> str:
    return hashlib.md5((image_url or "").encode("utf-8")).hexdigest()


async def get_cached_analysis(image_url: str) -> Optional[Dict[str, Any]]:
    now = datetime.now(timezone.utc)
    async with async_session_maker() as db:
        result = await db.execute(
            select(ImageAnalysisCache)
            .where(ImageAnalysisCache.image_hash == image_hash(image_url))
            .order_by(ImageAnalysisCache.created_at.desc())
            .limit(1)
        )
        cached = result.scalar_one_or_none()
    if not cached:
        return None
    expires_at = cached.expires_at
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at is not None and expires_at < now:
        return None
    return cached.analysis_data


async def analyze_product_image(
    image_url: str,
    *,
    product_id: Optional[str] = None,
    revision_id: Optional[str] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Analyze one image, reusing an unexpired cached result unless forced."""
    if not image_url:
        raise ValueError("image_url is required")

    if not force:
        cached = await get_cached_analysis(image_url)
        if cached is not None:
            logger.info("Image analysis cache hit for product %s", product_id)
            return cached

    started = time.monotonic()
    analysis = await asyncio.to_thread(vision.analyze_image, image_url, settings.OPENAI_API_KEY)
    payload = analysis.model_dump()
    elapsed_ms = int((time.monotonic() - started) * 1000)

    async with async_session_maker() as db:
        db.add(
            ImageAnalysisCache(
                image_url=image_url[:2048],
                image_hash=image_hash(image_url),
                analysis_data=payload,
                model_used=settings.VISION_MODEL,
                product_idea_id=product_id,
                revision_id=revision_id,
                processing_time_ms=elapsed_ms,
                expires_at=datetime.now(timezone.utc) + timedelta(hours=max(settings.IMAGE_ANALYSIS_CACHE_TTL_HOURS, 1)),
            )
        )
        await db.commit()
    logger.info("Image analyzed for product %s in %sms", product_id, elapsed_ms)
    return payload
