"""Generated tech-pack artifacts and the collections that group them."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


TECH_FILE_TYPES = ("base_view", "component", "closeup", "sketch", "flat_sketch", "assembly_view")


class TechFileCollection(Base):
    """One generation batch for a product."""

    __tablename__ = "tech_file_collections"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_idea_id = Column(String, ForeignKey("product_ideas.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    collection_name = Column(String, nullable=False)
    collection_type = Column(String, nullable=False, default="tech_pack_v2")
    description = Column(String, nullable=True)
    status = Column(String, nullable=False, default="processing")  # processing, completed, failed
    progress = Column(Integer, nullable=False, default=0)
    credits_used = Column(Integer, nullable=False, default=0)
    generation_batch_id = Column(String, nullable=True, index=True)
    file_ids_json = Column(JSON, nullable=True)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    files = relationship("TechFile", back_populates="collection")


class TechFile(Base):
    """A single generated image or analysis for a product."""

    __tablename__ = "tech_files"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_idea_id = Column(String, ForeignKey("product_ideas.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    revision_id = Column(String, ForeignKey("product_multiview_revisions.id"), nullable=True, index=True)
    collection_id = Column(String, ForeignKey("tech_file_collections.id"), nullable=True, index=True)
    file_type = Column(String, nullable=False, index=True)
    view_type = Column(String, nullable=True)
    file_category = Column(String, nullable=True)
    file_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    analysis_data = Column(JSON, nullable=True)
    confidence_score = Column(Float, nullable=True)
    status = Column(String, nullable=False, default="completed")  # processing, completed, failed, archived
    generation_batch_id = Column(String, nullable=True)
    credits_used = Column(Integer, nullable=False, default=0)
    metadata_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    collection = relationship("TechFileCollection", back_populates="files")
