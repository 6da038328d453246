"""AllowanceUsage model: free quota consumption per account and action."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class AllowanceUsage(Base):
    """Usage counters for the cycle that started at cycle_start."""

    __tablename__ = "allowance_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "action_type", name="uq_allowance_usage_user_action"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    action_type = Column(String, nullable=False)
    used_this_month = Column(Integer, nullable=False, default=0)
    billable_this_month = Column(Integer, nullable=False, default=0)
    # Last reset marker; a row from an older cycle reads as unused.
    cycle_start = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
