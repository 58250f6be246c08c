"""Outcome record of a fire-and-forget background task."""

import uuid

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class BackgroundTask(Base):
    """Durable status of a dispatched background analysis."""

    __tablename__ = "background_tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    task_name = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    product_idea_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="scheduled", index=True)  # scheduled, running, succeeded, failed
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    last_error = Column(String, nullable=True)
    queue_job_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
