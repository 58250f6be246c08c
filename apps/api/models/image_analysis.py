"""Cached vision analysis of a product image."""

import uuid

from sqlalchemy import Column, DateTime, Integer, JSON, String
from sqlalchemy.sql import func

from database import Base


class ImageAnalysisCache(Base):
    """Vision model output keyed by image URL hash."""

    __tablename__ = "image_analysis_cache"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    image_url = Column(String, nullable=False)
    image_hash = Column(String, nullable=False, index=True)
    analysis_data = Column(JSON, nullable=False)
    model_used = Column(String, nullable=True)
    product_idea_id = Column(String, nullable=True, index=True)
    revision_id = Column(String, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
