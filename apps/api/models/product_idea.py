"""Product idea and its generated multiview revisions."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ProductIdea(Base):
    """A creator's product concept."""

    __tablename__ = "product_ideas"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    product_name = Column(String, nullable=True)
    product_description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    prompt = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="product_ideas")
    revisions = relationship("ProductRevision", back_populates="product_idea", cascade="all, delete-orphan")


class ProductRevision(Base):
    """One generated view (front/back/side/...) of a product idea."""

    __tablename__ = "product_multiview_revisions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    product_idea_id = Column(String, ForeignKey("product_ideas.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    view_type = Column(String, nullable=False)
    image_url = Column(String, nullable=False)
    thumbnail_url = Column(String, nullable=True)
    revision_number = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    product_idea = relationship("ProductIdea", back_populates="revisions")
