"""Credit reservation model correlating a reserve call with its refund."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditReservation(Base):
    """Credits held for an in-flight generation."""

    __tablename__ = "credit_reservations"

    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="reserved", index=True)  # reserved, committed, refunded, refund_failed
    operation = Column(String, nullable=True)
    reason = Column(String, nullable=True)
    allocations_json = Column(JSON, nullable=True)  # [{"record_id": ..., "deducted": ...}]
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="reservations")
