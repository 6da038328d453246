"""CreditUsageEvent model: one row per committed priced action."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


class CreditUsageEvent(Base):
    __tablename__ = "credit_usage_events"
    __table_args__ = (
        Index("ix_credit_usage_events_user_created", "user_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    action_type = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    free_quantity = Column(Integer, nullable=False, default=0)
    billable_quantity = Column(Integer, nullable=False, default=0)
    discount_percentage = Column(Float, nullable=False, default=0)
    credits_charged = Column(Integer, nullable=False, default=0)
    ledger_entry_id = Column(Integer, ForeignKey("credit_ledger.id"), nullable=True)
    reference_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
