"""Captured payment model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Payment(Base):
    """Provider payment that granted credits."""

    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("provider", "external_reference", name="uq_payments_provider_reference"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    external_reference = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, nullable=False, default="USD")
    quantity = Column(Integer, nullable=False, default=0)
    payment_status = Column(String, nullable=True)
    payer_id = Column(String, nullable=True)
    payer_name = Column(String, nullable=True)
    payer_email = Column(String, nullable=True)
    credit_record_id = Column(String, ForeignKey("user_credits.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="payments")
