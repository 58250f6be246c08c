"""Tech pack generation router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.background import (
    get_background_task,
    serialize_background_task,
    trigger_batch_background_analysis,
)
from services.generation import (
    analyze_base_views,
    generate_assembly_view,
    generate_complete_tech_pack,
    generate_custom_component,
    generate_flat_sketches,
    run_with_credit_reservation,
)
from services.tech_files import (
    get_existing_tech_pack,
    get_owned_product,
    get_product_generation_stats,
    reset_tech_files,
    serialize_tech_file,
    update_analysis,
)

router = APIRouter()


class _RequestBody(BaseModel):
    """Accepts snake_case or camelCase keys; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)


class GenerationOptions(_RequestBody):
    skip_base_views: bool = False
    skip_components: bool = False
    skip_close_ups: bool = False
    skip_sketches: bool = False
    collection_name: Optional[str] = Field(default=None, max_length=200)


class ProductGenerationRequest(_RequestBody):
    product_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    revision_ids: List[str] = Field(default_factory=list, max_length=20)
    category: Optional[str] = Field(default=None, max_length=100)
    primary_image_url: Optional[str] = Field(default=None, max_length=100000)

    @model_validator(mode="after")
    def _require_image_source(self):
        if not self.revision_ids and not self.primary_image_url:
            raise ValueError("revision_ids or primary_image_url is required")
        return self


class GenerateCompleteRequest(ProductGenerationRequest):
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class CustomComponentRequest(_RequestBody):
    product_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    component_description: str = Field(min_length=3, max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)
    context: str = Field(default="", max_length=2000)


class UpdateAnalysisRequest(_RequestBody):
    file_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    field_path: Optional[str] = Field(default=None, min_length=1, max_length=300)
    value: Any = None

    @model_validator(mode="after")
    def _one_update_mode(self):
        if (self.analysis is None) == (self.field_path is None):
            raise ValueError("Provide exactly one of analysis or field_path")
        return self


class AnalyzeImageItem(_RequestBody):
    image_url: str = Field(min_length=1, max_length=100000)
    revision_id: Optional[str] = None


class AnalyzeImagesRequest(_RequestBody):
    product_id: str = Field(min_length=1)
    user_id: Optional[str] = None
    images: List[AnalyzeImageItem] = Field(min_length=1, max_length=20)
    with_retry: bool = True


def _split_ids(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    ids = [item.strip() for item in raw.split(",") if item.strip()]
    return ids or None


@router.post("/generate-base-views")
async def generate_base_views_route(
    request: ProductGenerationRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)

    async def work():
        return await analyze_base_views(
            db,
            product_id=request.product_id,
            user_id=user_id,
            revision_ids=request.revision_ids,
            category=request.category,
            primary_image_url=request.primary_image_url,
        )

    base_views = await run_with_credit_reservation(
        user_id, db, "base_views", work, reason=f"base views for {request.product_id}"
    )
    return {"success": True, "base_views": base_views, "credits_used": 0}


@router.post("/generate-complete")
async def generate_complete_route(
    request: GenerateCompleteRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)

    async def work():
        return await generate_complete_tech_pack(
            db,
            product_id=request.product_id,
            user_id=user_id,
            revision_ids=request.revision_ids,
            category=request.category,
            primary_image_url=request.primary_image_url,
            options=request.options.model_dump(),
        )

    result = await run_with_credit_reservation(
        user_id, db, "complete_tech_pack", work, reason=f"complete tech pack for {request.product_id}"
    )
    return {"success": True, **result}


@router.post("/generate-assembly-view")
async def generate_assembly_view_route(
    request: ProductGenerationRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)

    async def work():
        return await generate_assembly_view(
            db,
            product_id=request.product_id,
            user_id=user_id,
            revision_ids=request.revision_ids,
            category=request.category,
            primary_image_url=request.primary_image_url,
        )

    result = await run_with_credit_reservation(
        user_id, db, "assembly_view", work, reason=f"assembly view for {request.product_id}"
    )
    return {"success": True, **result}


@router.post("/generate-flat-sketches")
async def generate_flat_sketches_route(
    request: ProductGenerationRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)

    async def work():
        return await generate_flat_sketches(
            db,
            product_id=request.product_id,
            user_id=user_id,
            revision_ids=request.revision_ids,
            category=request.category,
            primary_image_url=request.primary_image_url,
        )

    result = await run_with_credit_reservation(
        user_id, db, "flat_sketches", work, reason=f"flat sketches for {request.product_id}"
    )
    return {"success": True, **result}


@router.post("/generate-custom-component")
async def generate_custom_component_route(
    request: CustomComponentRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_generate", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)
    result = await generate_custom_component(
        db,
        product_id=request.product_id,
        user_id=user_id,
        description=request.component_description.strip(),
        category=request.category,
        context=request.context,
    )
    return {"success": True, **result}


@router.get("/existing-files")
async def existing_files_route(
    product_id: str = Query(min_length=1),
    revision_ids: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_owned_product(product_id, auth.user_id, db)
    tech_pack = await get_existing_tech_pack(product_id, db, revision_ids=_split_ids(revision_ids))
    return {"success": True, **tech_pack}


@router.get("/stats")
async def generation_stats_route(
    product_id: str = Query(min_length=1),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_owned_product(product_id, auth.user_id, db)
    return {"success": True, **await get_product_generation_stats(product_id, db)}


@router.delete("/reset")
async def reset_route(
    product_id: str = Query(min_length=1),
    revision_ids: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_owned_product(product_id, auth.user_id, db)
    counts = await reset_tech_files(product_id, db, revision_ids=_split_ids(revision_ids))
    return {"success": True, **counts}


@router.patch("/update-analysis")
async def update_analysis_route(
    request: UpdateAnalysisRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    tech_file = await update_analysis(
        request.file_id,
        user_id,
        db,
        analysis=request.analysis,
        field_path=request.field_path,
        value=request.value,
    )
    return {"success": True, "file": serialize_tech_file(tech_file)}


@router.post("/analyze-images", status_code=202)
async def analyze_images_route(
    request: AnalyzeImagesRequest,
    _rate_limit: None = Depends(rate_limit("tech_pack_analyze", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    await get_owned_product(request.product_id, user_id, db)
    task_ids = await trigger_batch_background_analysis(
        [
            {"product_id": request.product_id, "image_url": item.image_url, "revision_id": item.revision_id}
            for item in request.images
        ],
        user_id=user_id,
        with_retry=request.with_retry,
    )
    return {"success": True, "task_ids": task_ids}


@router.get("/background-tasks/{task_id}")
async def background_task_route(
    task_id: str,
    auth: AuthContext = Depends(get_auth_context),
):
    task = await get_background_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Background task not found")
    if task.user_id and task.user_id != auth.user_id:
        raise HTTPException(status_code=403, detail="Not authorized to view this task")
    return {"success": True, "task": serialize_background_task(task)}
