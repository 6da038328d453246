"""PricingRule model: per-action cost, free allowance and bulk tiers."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from database import Base


class PricingRule(Base):
    """Versioned pricing rule; the latest effective_from not in the future wins."""

    __tablename__ = "pricing_rules"
    __table_args__ = (
        Index("ix_pricing_rules_action_effective", "action_type", "effective_from"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    action_type = Column(String, nullable=False, index=True)
    credits_per_action = Column(Integer, nullable=False)
    free_allowance_per_month = Column(Integer, nullable=False, default=0)
    bulk_discounts = Column(JSON, nullable=False, default=list)
    effective_from = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
