"""TopupPurchase model: idempotency record for confirmed purchases."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class TopupPurchase(Base):
    __tablename__ = "topup_purchases"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    external_reference = Column(String, nullable=False, unique=True, index=True)
    package_type = Column(String, nullable=False)
    credits = Column(Integer, nullable=False)
    price_paid_cents = Column(Integer, nullable=False)
    discount_percentage = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="USD")
    ledger_entry_id = Column(Integer, ForeignKey("credit_ledger.id"), nullable=True)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
