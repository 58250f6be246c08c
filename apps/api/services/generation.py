"""Tech-pack generation: credit reservation around ordered AI generation steps."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.product_idea import ProductRevision
from multimodal import vision
from multimodal.prompts import (
    ASSEMBLY_VIEW_IMAGE_PROMPT,
    CLOSE_UP_IMAGE_PROMPT,
    COMPONENT_IMAGE_PROMPT,
    CUSTOM_COMPONENT_IMAGE_PROMPT,
    FLAT_SKETCH_IMAGE_PROMPT,
)
from services.confidence import assess_analysis_confidence
from services.credits import (
    commit_reservation,
    credit_cost_table,
    mark_refund_failed,
    refund_reserved_credits,
    reserve_credits,
)
from services.tech_files import (
    add_files_to_collection,
    create_collection,
    create_tech_file,
    get_latest_tech_files,
    update_collection_credits,
    update_collection_progress,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREDIT_COSTS: Dict[str, int] = credit_cost_table()
BASE_VIEW_PRIORITY = ("front", "back", "side")
SKETCH_VIEWS = ("front", "back", "side")


class GenerationError(RuntimeError):
    """A generation step failed after credits were reserved."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        refunded: bool = False,
        reservation_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.step = step
        self.refunded = refunded
        self.reservation_id = reservation_id


def get_credit_cost(operation: str) -> int:
    if operation not in CREDIT_COSTS:
        raise ValueError(f"Unknown generation operation: {operation}")
    return CREDIT_COSTS[operation]


async def _refund_after_failure(
    user_id: str,
    db: AsyncSession,
    amount: int,
    reservation_id: str,
    reason: str,
) -> bool:
    try:
        return await refund_reserved_credits(
            user_id,
            db,
            amount=amount,
            reservation_id=reservation_id,
            reason=reason,
        )
    except Exception as exc:
        logger.exception("Refund of reservation %s failed: %s", reservation_id, exc)
        await db.rollback()
        try:
            await mark_refund_failed(reservation_id, db, str(exc))
        except Exception:
            logger.exception("Could not record failed refund for reservation %s", reservation_id)
        return False


async def run_with_credit_reservation(
    user_id: str,
    db: AsyncSession,
    operation: str,
    work: Callable[[], Awaitable[T]],
    reason: Optional[str] = None,
) -> T:
    """Reserve the operation's cost, run work, refund the full amount if work raises."""
    cost = get_credit_cost(operation)
    reservation_id: Optional[str] = None
    if cost > 0:
        reservation = await reserve_credits(user_id, db, amount=cost, operation=operation, reason=reason)
        if not reservation["success"]:
            raise HTTPException(status_code=402, detail=reservation["message"])
        reservation_id = reservation["reservation_id"]

    try:
        result = await work()
    except Exception as exc:
        await db.rollback()
        refunded = False
        if reservation_id:
            refunded = await _refund_after_failure(
                user_id,
                db,
                cost,
                reservation_id,
                f"{operation} failed: {exc}",
            )
        if isinstance(exc, HTTPException):
            raise
        raise GenerationError(
            str(exc) or exc.__class__.__name__,
            step=getattr(exc, "step", None) or operation,
            refunded=refunded,
            reservation_id=reservation_id,
        ) from exc

    if reservation_id:
        await commit_reservation(reservation_id, db)
    return result


def _file_summary(tech_file, **extra: Any) -> Dict[str, Any]:
    return {
        "file_id": tech_file.id,
        "file_type": tech_file.file_type,
        "view_type": tech_file.view_type,
        "file_category": tech_file.file_category,
        "file_url": tech_file.file_url,
        "revision_id": tech_file.revision_id,
        "analysis_data": tech_file.analysis_data or {},
        "confidence_score": tech_file.confidence_score,
        **extra,
    }


async def _select_base_revisions(
    db: AsyncSession,
    product_id: str,
    revision_ids: Sequence[str],
) -> List[ProductRevision]:
    if not revision_ids:
        return []
    result = await db.execute(
        select(ProductRevision).where(
            ProductRevision.id.in_(list(revision_ids)),
            ProductRevision.product_idea_id == product_id,
        )
    )
    revisions = result.scalars().all()
    selected = []
    for view_type in BASE_VIEW_PRIORITY:
        match = next((revision for revision in revisions if revision.view_type == view_type), None)
        if match:
            selected.append(match)
    return selected


async def analyze_base_views(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    revision_ids: Sequence[str],
    category: Optional[str] = None,
    primary_image_url: Optional[str] = None,
    collection_id: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Analyze front/back/side revisions, reusing an earlier analysis of the same revision."""
    sources: List[Dict[str, Optional[str]]] = [
        {"revision_id": revision.id, "view_type": revision.view_type, "image_url": revision.image_url}
        for revision in await _select_base_revisions(db, product_id, revision_ids)
    ]
    if not sources and primary_image_url:
        sources = [{"revision_id": None, "view_type": "front", "image_url": primary_image_url}]

    base_views: List[Dict[str, Any]] = []
    for source in sources:
        if source["revision_id"]:
            cached = await get_latest_tech_files(
                product_id,
                db,
                file_type="base_view",
                revision_id=source["revision_id"],
            )
            if cached:
                base_views.append(_file_summary(cached[0], image_url=source["image_url"], cached=True))
                continue

        analysis = await asyncio.to_thread(
            vision.analyze_base_view,
            source["image_url"],
            source["view_type"],
            category,
            settings.OPENAI_API_KEY,
        )
        analysis_data = analysis.model_dump()
        assessment = assess_analysis_confidence(analysis_data, analysis.confidence)
        tech_file = await create_tech_file(
            db,
            product_id=product_id,
            user_id=user_id,
            file_type="base_view",
            view_type=source["view_type"],
            file_url=source["image_url"],
            revision_id=source["revision_id"],
            collection_id=collection_id,
            analysis_data=analysis_data,
            confidence_score=assessment["score"],
            generation_batch_id=batch_id,
            metadata={
                "category": category,
                "confidence_breakdown": assessment["breakdown"],
                "recommendation": assessment["recommendation"],
            },
        )
        base_views.append(_file_summary(tech_file, image_url=source["image_url"], cached=False))
    return base_views


def _primary_analysis(base_views: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return dict(base_views[0].get("analysis_data") or {}) if base_views else {}


def _reference_url(base_views: Sequence[Dict[str, Any]]) -> Optional[str]:
    return base_views[0].get("image_url") if base_views else None


async def generate_component_images(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    category: Optional[str],
    base_views: Sequence[Dict[str, Any]],
    collection_id: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    analysis = _primary_analysis(base_views)
    components = await asyncio.to_thread(vision.plan_components, analysis, category, settings.OPENAI_API_KEY)
    results = []
    for component in components:
        image_url = await asyncio.to_thread(
            vision.generate_image,
            COMPONENT_IMAGE_PROMPT.format(name=component.name, description=component.description),
            _reference_url(base_views),
            settings.OPENAI_API_KEY,
        )
        tech_file = await create_tech_file(
            db,
            product_id=product_id,
            user_id=user_id,
            file_type="component",
            file_category=component.name,
            file_url=image_url,
            revision_id=base_views[0].get("revision_id") if base_views else None,
            collection_id=collection_id,
            analysis_data=component.model_dump(),
            generation_batch_id=batch_id,
            credits_used=1,
        )
        results.append(_file_summary(tech_file))
    return results


async def generate_custom_component(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    description: str,
    category: Optional[str] = None,
    context: str = "",
) -> Dict[str, Any]:
    """Validate a user-described component against the analyzed views, then render it."""
    base_files = await get_latest_tech_files(product_id, db, file_type="base_view", limit=3)
    if not base_files:
        raise HTTPException(
            status_code=400,
            detail="No product analysis found. Please generate base views first.",
        )
    base_views = [
        {"view_type": tech_file.view_type, "analysis": tech_file.analysis_data or {}}
        for tech_file in base_files
    ]

    # checked before any credits are reserved
    validation = await asyncio.to_thread(
        vision.validate_custom_component,
        description,
        category,
        base_views,
        context,
        settings.OPENAI_API_KEY,
    )
    if not validation.exists:
        raise HTTPException(status_code=422, detail=f"Component not found: {validation.reason}")

    matched = dict(validation.matched_component or {})
    component_name = matched.get("name") or description
    component_type = matched.get("type") or "custom"
    cost = get_credit_cost("custom_component")

    async def work() -> Dict[str, Any]:
        image_url = await asyncio.to_thread(
            vision.generate_image,
            CUSTOM_COMPONENT_IMAGE_PROMPT.format(
                prompt=validation.image_generation_prompt
                or COMPONENT_IMAGE_PROMPT.format(name=component_name, description=description),
                negative_prompt=validation.negative_prompt or "blurry, low quality",
            ),
            base_files[0].file_url,
            settings.OPENAI_API_KEY,
        )
        tech_file = await create_tech_file(
            db,
            product_id=product_id,
            user_id=user_id,
            file_type="component",
            file_category=component_type,
            file_url=image_url,
            revision_id=base_files[0].revision_id,
            analysis_data={
                "category": "custom_component_image",
                "user_request": description,
                "validation_result": validation.model_dump(),
                "is_custom_request": True,
            },
            confidence_score=validation.confidence,
            credits_used=cost,
            metadata={
                "component_name": component_name,
                "component_type": component_type,
                "user_description": description,
                "custom_generated": True,
            },
        )
        return _file_summary(tech_file)

    component = await run_with_credit_reservation(
        user_id,
        db,
        "custom_component",
        work,
        reason=f"Custom component: {component_name}",
    )
    logger.info("Generated custom component %s for product %s", component_name, product_id)
    return {"component": component, "validation": validation.model_dump(), "credits_used": cost}


async def generate_close_ups(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    category: Optional[str],
    base_views: Sequence[Dict[str, Any]],
    collection_id: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    analysis = _primary_analysis(base_views)
    shots = await asyncio.to_thread(vision.plan_close_ups, analysis, category, settings.OPENAI_API_KEY)
    results = []
    for shot in shots:
        image_url = await asyncio.to_thread(
            vision.generate_image,
            CLOSE_UP_IMAGE_PROMPT.format(focus_area=shot.focus_area, reason=shot.reason),
            _reference_url(base_views),
            settings.OPENAI_API_KEY,
        )
        tech_file = await create_tech_file(
            db,
            product_id=product_id,
            user_id=user_id,
            file_type="closeup",
            file_category=shot.name,
            file_url=image_url,
            revision_id=base_views[0].get("revision_id") if base_views else None,
            collection_id=collection_id,
            analysis_data=shot.model_dump(),
            generation_batch_id=batch_id,
            credits_used=1,
        )
        results.append(_file_summary(tech_file))
    return results


async def _generate_sketches(
    db: AsyncSession,
    *,
    file_type: str,
    product_id: str,
    user_id: str,
    category: Optional[str],
    base_views: Sequence[Dict[str, Any]],
    views: Sequence[str],
    collection_id: Optional[str],
    batch_id: Optional[str],
    credits_per_view: int,
) -> List[Dict[str, Any]]:
    by_view = {view.get("view_type"): view for view in base_views}
    product_type = _primary_analysis(base_views).get("product_type") or category or "product"
    results = []
    for view_type in views:
        source = by_view.get(view_type) or (base_views[0] if base_views else {})
        analysis = dict(source.get("analysis_data") or {})
        callouts = await asyncio.to_thread(vision.generate_sketch_callouts, analysis, view_type, settings.OPENAI_API_KEY)
        image_url = await asyncio.to_thread(
            vision.generate_image,
            FLAT_SKETCH_IMAGE_PROMPT.format(view_type=view_type, product_type=product_type),
            source.get("image_url"),
            settings.OPENAI_API_KEY,
        )
        tech_file = await create_tech_file(
            db,
            product_id=product_id,
            user_id=user_id,
            file_type=file_type,
            view_type=view_type,
            file_url=image_url,
            revision_id=source.get("revision_id"),
            collection_id=collection_id,
            analysis_data={"callouts": [callout.model_dump() for callout in callouts]},
            generation_batch_id=batch_id,
            credits_used=credits_per_view,
        )
        results.append(_file_summary(tech_file))
    return results


async def generate_technical_sketches(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    category: Optional[str],
    base_views: Sequence[Dict[str, Any]],
    views: Sequence[str] = SKETCH_VIEWS,
    collection_id: Optional[str] = None,
    batch_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    return await _generate_sketches(
        db,
        file_type="sketch",
        product_id=product_id,
        user_id=user_id,
        category=category,
        base_views=base_views,
        views=views,
        collection_id=collection_id,
        batch_id=batch_id,
        credits_per_view=1,
    )


async def generate_flat_sketches(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    revision_ids: Sequence[str],
    category: Optional[str] = None,
    primary_image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Front, back and side flat sketches billed as one operation."""
    base_views = await analyze_base_views(
        db,
        product_id=product_id,
        user_id=user_id,
        revision_ids=revision_ids,
        category=category,
        primary_image_url=primary_image_url,
    )
    if not base_views:
        raise GenerationError("No base views available for flat sketches", step="base_views")
    sketches = await _generate_sketches(
        db,
        file_type="flat_sketch",
        product_id=product_id,
        user_id=user_id,
        category=category,
        base_views=base_views,
        views=SKETCH_VIEWS,
        collection_id=None,
        batch_id=None,
        credits_per_view=0,
    )
    return {"flat_sketches": sketches, "credits_used": get_credit_cost("flat_sketches")}


async def generate_assembly_view(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    revision_ids: Sequence[str] = (),
    category: Optional[str] = None,
    primary_image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """Exploded assembly image plus an ordered assembly summary."""
    existing = await get_latest_tech_files(product_id, db, file_type="component", limit=10)
    components = [dict(tech_file.analysis_data or {}, name=tech_file.file_category) for tech_file in existing]
    base_views = await analyze_base_views(
        db,
        product_id=product_id,
        user_id=user_id,
        revision_ids=revision_ids,
        category=category,
        primary_image_url=primary_image_url,
    )
    if not components:
        planned = await asyncio.to_thread(
            vision.plan_components,
            _primary_analysis(base_views),
            category,
            settings.OPENAI_API_KEY,
        )
        components = [component.model_dump() for component in planned]

    summary = await asyncio.to_thread(vision.generate_assembly_summary, components, settings.OPENAI_API_KEY)
    product_type = _primary_analysis(base_views).get("product_type") or category or "product"
    image_url = await asyncio.to_thread(
        vision.generate_image,
        ASSEMBLY_VIEW_IMAGE_PROMPT.format(
            product_type=product_type,
            components=", ".join(str(component.get("name", "part")) for component in components),
        ),
        _reference_url(base_views) or primary_image_url,
        settings.OPENAI_API_KEY,
    )
    tech_file = await create_tech_file(
        db,
        product_id=product_id,
        user_id=user_id,
        file_type="assembly_view",
        file_url=image_url,
        revision_id=base_views[0].get("revision_id") if base_views else None,
        analysis_data={"components": components, "assembly": summary},
        credits_used=get_credit_cost("assembly_view"),
    )
    return {"assembly_view": _file_summary(tech_file), "credits_used": get_credit_cost("assembly_view")}


async def generate_complete_tech_pack(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    revision_ids: Sequence[str],
    category: Optional[str] = None,
    primary_image_url: Optional[str] = None,
    options: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Base views, components, close-ups and sketches in order, tracked in one collection."""
    options = options or {}
    started = time.monotonic()
    collection = await create_collection(
        db,
        product_id=product_id,
        user_id=user_id,
        collection_name=options.get("collection_name")
        or f"Tech Pack - {datetime.now(timezone.utc).strftime('%Y-%m-%d')}",
        description="Complete tech pack with base views, components, close-ups and technical sketches",
    )
    collection_id = collection.id
    batch_id = collection.generation_batch_id
    results: Dict[str, List[Dict[str, Any]]] = {"base_views": [], "components": [], "close_ups": [], "sketches": []}
    step = "base_views"
    progress = 0

    try:
        if not options.get("skip_base_views"):
            progress = 10
            await update_collection_progress(collection_id, progress, db, status="processing")
            results["base_views"] = await analyze_base_views(
                db,
                product_id=product_id,
                user_id=user_id,
                revision_ids=revision_ids,
                category=category,
                primary_image_url=primary_image_url,
                collection_id=collection_id,
                batch_id=batch_id,
            )
            new_analyses = sum(1 for view in results["base_views"] if not view["cached"])
            await add_files_to_collection(collection_id, [view["file_id"] for view in results["base_views"]], db)
            await update_collection_credits(collection_id, new_analyses, db)
            progress = 30
            await update_collection_progress(collection_id, progress, db)

        steps = (
            ("components", "skip_components", 35, generate_component_images),
            ("close_ups", "skip_close_ups", 55, generate_close_ups),
            ("sketches", "skip_sketches", 75, generate_technical_sketches),
        )
        for name, skip_flag, step_progress, generate in steps:
            if options.get(skip_flag) or not results["base_views"]:
                continue
            step = name
            progress = step_progress
            await update_collection_progress(collection_id, progress, db, status="processing")
            results[name] = await generate(
                db,
                product_id=product_id,
                user_id=user_id,
                category=category,
                base_views=results["base_views"],
                collection_id=collection_id,
                batch_id=batch_id,
            )
            if results[name]:
                await add_files_to_collection(collection_id, [item["file_id"] for item in results[name]], db)
                await update_collection_credits(collection_id, len(results[name]), db)

        step = "finalize"
        await update_collection_progress(collection_id, 100, db, status="completed")
    except Exception as exc:
        logger.error("Tech pack generation failed at %s for product %s: %s", step, product_id, exc)
        await db.rollback()
        try:
            await update_collection_progress(collection_id, progress, db, status="failed", error_message=str(exc))
        except Exception:
            logger.exception("Could not mark collection %s failed", collection_id)
        if isinstance(exc, GenerationError):
            raise
        raise GenerationError(str(exc) or exc.__class__.__name__, step=step) from exc

    return {
        "collection_id": collection_id,
        "base_views": results["base_views"],
        "components": results["components"],
        "close_ups": results["close_ups"],
        "sketches": results["sketches"],
        "total_credits_used": get_credit_cost("complete_tech_pack"),
        "generation_time_ms": int((time.monotonic() - started) * 1000),
    }
