"""Persistence for generated tech-pack artifacts and their collections."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.image_analysis import ImageAnalysisCache
from models.product_idea import ProductIdea
from models.tech_file import TECH_FILE_TYPES, TechFile, TechFileCollection

logger = logging.getLogger(__name__)

BASE_VIEW_ORDER = ("front", "back", "side", "top", "bottom")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_tech_file(tech_file: TechFile) -> Dict[str, Any]:
    return {
        "id": tech_file.id,
        "product_idea_id": tech_file.product_idea_id,
        "revision_id": tech_file.revision_id,
        "collection_id": tech_file.collection_id,
        "file_type": tech_file.file_type,
        "view_type": tech_file.view_type,
        "file_category": tech_file.file_category,
        "file_url": tech_file.file_url,
        "thumbnail_url": tech_file.thumbnail_url,
        "analysis_data": tech_file.analysis_data or {},
        "confidence_score": tech_file.confidence_score,
        "status": tech_file.status,
        "generation_batch_id": tech_file.generation_batch_id,
        "credits_used": int(tech_file.credits_used or 0),
        "metadata": tech_file.metadata_json or {},
        "created_at": _iso(tech_file.created_at),
    }


def serialize_collection(collection: TechFileCollection) -> Dict[str, Any]:
    return {
        "id": collection.id,
        "product_idea_id": collection.product_idea_id,
        "collection_name": collection.collection_name,
        "collection_type": collection.collection_type,
        "status": collection.status,
        "progress": int(collection.progress or 0),
        "credits_used": int(collection.credits_used or 0),
        "generation_batch_id": collection.generation_batch_id,
        "file_ids": list(collection.file_ids_json or []),
        "metadata": collection.metadata_json or {},
        "created_at": _iso(collection.created_at),
        "completed_at": _iso(collection.completed_at),
    }


async def get_owned_product(product_id: str, user_id: str, db: AsyncSession) -> ProductIdea:
    result = await db.execute(select(ProductIdea).where(ProductIdea.id == product_id))
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to access this product")
    return product


async def create_tech_file(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    file_type: str,
    file_url: Optional[str] = None,
    view_type: Optional[str] = None,
    file_category: Optional[str] = None,
    revision_id: Optional[str] = None,
    collection_id: Optional[str] = None,
    analysis_data: Optional[Dict[str, Any]] = None,
    confidence_score: Optional[float] = None,
    generation_batch_id: Optional[str] = None,
    credits_used: int = 0,
    metadata: Optional[Dict[str, Any]] = None,
    status: str = "completed",
) -> TechFile:
    """Insert and commit one artifact so it survives a later step failing."""
    if file_type not in TECH_FILE_TYPES:
        raise ValueError(f"Unknown tech file type: {file_type}")
    tech_file = TechFile(
        id=str(uuid.uuid4()),
        product_idea_id=product_id,
        user_id=user_id,
        revision_id=revision_id,
        collection_id=collection_id,
        file_type=file_type,
        view_type=view_type,
        file_category=file_category,
        file_url=file_url,
        analysis_data=analysis_data or {},
        confidence_score=confidence_score,
        status=status,
        generation_batch_id=generation_batch_id,
        credits_used=max(int(credits_used or 0), 0),
        metadata_json=metadata or {},
    )
    db.add(tech_file)
    await db.commit()
    return tech_file


async def get_tech_file(file_id: str, db: AsyncSession) -> Optional[TechFile]:
    result = await db.execute(select(TechFile).where(TechFile.id == file_id))
    return result.scalar_one_or_none()


async def get_latest_tech_files(
    product_id: str,
    db: AsyncSession,
    *,
    file_type: Optional[str] = None,
    view_type: Optional[str] = None,
    revision_id: Optional[str] = None,
    limit: Optional[int] = 1,
) -> List[TechFile]:
    """Newest artifacts first, filtered by type, view and revision."""
    query = (
        select(TechFile)
        .where(TechFile.product_idea_id == product_id, TechFile.status != "archived")
        .order_by(TechFile.created_at.desc(), TechFile.id.desc())
    )
    if file_type:
        query = query.where(TechFile.file_type == file_type)
    if view_type:
        query = query.where(TechFile.view_type == view_type)
    if revision_id:
        query = query.where(TechFile.revision_id == revision_id)
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_collection(
    db: AsyncSession,
    *,
    product_id: str,
    user_id: str,
    collection_name: str,
    collection_type: str = "tech_pack_v2",
    description: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> TechFileCollection:
    collection = TechFileCollection(
        id=str(uuid.uuid4()),
        product_idea_id=product_id,
        user_id=user_id,
        collection_name=collection_name,
        collection_type=collection_type,
        description=description,
        status="processing",
        progress=0,
        credits_used=0,
        generation_batch_id=f"batch_{uuid.uuid4().hex[:12]}",
        file_ids_json=[],
        metadata_json=metadata or {},
    )
    db.add(collection)
    await db.commit()
    return collection


async def _get_collection(collection_id: str, db: AsyncSession) -> TechFileCollection:
    result = await db.execute(select(TechFileCollection).where(TechFileCollection.id == collection_id))
    collection = result.scalar_one_or_none()
    if not collection:
        raise HTTPException(status_code=404, detail="Collection not found")
    return collection


async def add_files_to_collection(collection_id: str, file_ids: Iterable[str], db: AsyncSession) -> None:
    collection = await _get_collection(collection_id, db)
    existing = list(collection.file_ids_json or [])
    for file_id in file_ids:
        if file_id not in existing:
            existing.append(file_id)
    collection.file_ids_json = existing
    await db.commit()


async def update_collection_progress(
    collection_id: str,
    progress: int,
    db: AsyncSession,
    status: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    collection = await _get_collection(collection_id, db)
    collection.progress = max(0, min(int(progress), 100))
    if status:
        collection.status = status
    if status == "completed":
        collection.completed_at = datetime.now(timezone.utc)
    if error_message:
        metadata = dict(collection.metadata_json or {})
        metadata["error"] = error_message[:1000]
        collection.metadata_json = metadata
    await db.commit()


async def update_collection_credits(collection_id: str, credits_to_add: int, db: AsyncSession) -> int:
    collection = await _get_collection(collection_id, db)
    collection.credits_used = int(collection.credits_used or 0) + max(int(credits_to_add), 0)
    await db.commit()
    return collection.credits_used


async def get_existing_tech_pack(
    product_id: str,
    db: AsyncSession,
    revision_ids: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Group a product's artifacts the way the tech-pack viewer renders them."""
    query = (
        select(TechFile)
        .where(TechFile.product_idea_id == product_id, TechFile.status != "archived")
        .order_by(TechFile.created_at.asc(), TechFile.id.asc())
    )
    if revision_ids:
        query = query.where(TechFile.revision_id.in_(revision_ids))
    result = await db.execute(query)
    files = result.scalars().all()

    grouped: Dict[str, List[Dict[str, Any]]] = {
        "base_views": [],
        "components": [],
        "close_ups": [],
        "sketches": [],
        "flat_sketches": [],
        "assembly_views": [],
    }
    keys = {
        "base_view": "base_views",
        "component": "components",
        "closeup": "close_ups",
        "sketch": "sketches",
        "flat_sketch": "flat_sketches",
        "assembly_view": "assembly_views",
    }
    for tech_file in files:
        grouped[keys[tech_file.file_type]].append(serialize_tech_file(tech_file))

    grouped["base_views"].sort(
        key=lambda item: BASE_VIEW_ORDER.index(item["view_type"]) if item["view_type"] in BASE_VIEW_ORDER else len(BASE_VIEW_ORDER)
    )

    collections_result = await db.execute(
        select(TechFileCollection)
        .where(TechFileCollection.product_idea_id == product_id)
        .order_by(TechFileCollection.created_at.desc())
        .limit(1)
    )
    latest_collection = collections_result.scalar_one_or_none()
    return {
        **grouped,
        "latest_collection": serialize_collection(latest_collection) if latest_collection else None,
        "has_tech_pack": any(grouped.values()),
    }


async def reset_tech_files(
    product_id: str,
    db: AsyncSession,
    revision_ids: Optional[List[str]] = None,
) -> Dict[str, int]:
    """Delete generated artifacts. A full reset also drops collections and cached analyses."""
    file_query = delete(TechFile).where(TechFile.product_idea_id == product_id)
    if revision_ids:
        file_query = file_query.where(TechFile.revision_id.in_(revision_ids))
    files_result = await db.execute(file_query.execution_options(synchronize_session=False))

    collections_deleted = 0
    cache_cleared = 0
    if not revision_ids:
        collections_result = await db.execute(
            delete(TechFileCollection)
            .where(TechFileCollection.product_idea_id == product_id)
            .execution_options(synchronize_session=False)
        )
        collections_deleted = int(collections_result.rowcount or 0)
        cache_result = await db.execute(
            delete(ImageAnalysisCache)
            .where(ImageAnalysisCache.product_idea_id == product_id)
            .execution_options(synchronize_session=False)
        )
        cache_cleared = int(cache_result.rowcount or 0)
    await db.commit()

    counts = {
        "files_deleted": int(files_result.rowcount or 0),
        "collections_deleted": collections_deleted,
        "analyses_cleared": cache_cleared,
    }
    logger.info("tech_files_reset product=%s revisions=%s counts=%s", product_id, revision_ids, counts)
    return counts


def set_path_value(data: Dict[str, Any], field_path: str, value: Any) -> Dict[str, Any]:
    """Write value at a dotted path (``a.b.0.c``), creating missing objects on the way."""
    parts = [part for part in (field_path or "").split(".") if part]
    if not parts:
        raise ValueError("field_path is empty")

    updated = copy.deepcopy(data) if isinstance(data, dict) else {}
    cursor: Any = updated
    for index, part in enumerate(parts):
        last = index == len(parts) - 1
        if isinstance(cursor, list):
            if not part.isdigit():
                raise ValueError(f"'{part}' is not a list index in '{field_path}'")
            position = int(part)
            if position >= len(cursor):
                raise ValueError(f"Index {position} out of range in '{field_path}'")
            if last:
                cursor[position] = value
            else:
                if not isinstance(cursor[position], (dict, list)):
                    cursor[position] = {}
                cursor = cursor[position]
            continue

        if last:
            cursor[part] = value
        else:
            if not isinstance(cursor.get(part), (dict, list)):
                cursor[part] = {}
            cursor = cursor[part]
    return updated


async def update_analysis(
    file_id: str,
    user_id: str,
    db: AsyncSession,
    *,
    analysis: Optional[Dict[str, Any]] = None,
    field_path: Optional[str] = None,
    value: Any = None,
) -> TechFile:
    """Replace a file's analysis blob, or change one dotted-path field inside it."""
    tech_file = await get_tech_file(file_id, db)
    if not tech_file:
        raise HTTPException(status_code=404, detail="Tech file not found")
    if tech_file.user_id != user_id:
        raise HTTPException(status_code=403, detail="Not authorized to edit this file")

    if analysis is not None:
        tech_file.analysis_data = analysis
    elif field_path:
        try:
            tech_file.analysis_data = set_path_value(tech_file.analysis_data or {}, field_path, value)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    else:
        raise HTTPException(status_code=400, detail="Provide either analysis or field_path")

    metadata = dict(tech_file.metadata_json or {})
    metadata["edited_at"] = datetime.now(timezone.utc).isoformat()
    tech_file.metadata_json = metadata
    await db.commit()
    return tech_file


async def get_product_generation_stats(product_id: str, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(
        select(TechFile.file_type, TechFile.status, func.count(TechFile.id), func.coalesce(func.sum(TechFile.credits_used), 0))
        .where(TechFile.product_idea_id == product_id)
        .group_by(TechFile.file_type, TechFile.status)
    )
    files_by_type: Dict[str, int] = {}
    files_by_status: Dict[str, int] = {}
    total_files = 0
    total_credits = 0
    for file_type, status, count, credits in result.all():
        files_by_type[file_type] = files_by_type.get(file_type, 0) + int(count)
        files_by_status[status] = files_by_status.get(status, 0) + int(count)
        total_files += int(count)
        total_credits += int(credits or 0)
    return {
        "total_files": total_files,
        "total_credits_used": total_credits,
        "files_by_type": files_by_type,
        "files_by_status": files_by_status,
    }
