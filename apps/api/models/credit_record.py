"""Credit record model: one grant of purchased or subscribed credits."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_STATUS_ACTIVE = "active"
CREDIT_STATUS_EXPIRED = "expired"
PLAN_TYPE_ONE_TIME = "one_time"
PLAN_TYPE_SUBSCRIPTION = "subscription"


class CreditRecord(Base):
    """Remaining balance of a single credit grant."""

    __tablename__ = "user_credits"
    __table_args__ = (CheckConstraint("credits >= 0", name="credits_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    credits = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=CREDIT_STATUS_ACTIVE, index=True)
    # subscription cadence (subscription/monthly/yearly) or one_time
    plan_type = Column(String, nullable=False, default=PLAN_TYPE_ONE_TIME)
    membership = Column(String, nullable=True)
    subscription_id = Column(String, nullable=True, index=True)
    subscription_canceled = Column(Boolean, nullable=False, default=False)
    payment_provider = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="credit_records")
