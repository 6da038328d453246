"""CreditLedger model: append-only record of every wallet mutation."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


CREDIT_IN_TYPES = ("earned", "purchased", "bonus", "refunded")
CREDIT_OUT_TYPES = ("spent", "expired")
TRANSACTION_TYPES = CREDIT_IN_TYPES + CREDIT_OUT_TYPES


class CreditLedger(Base):
    """Immutable credit ledger entry, ordered by id."""

    __tablename__ = "credit_ledger"
    __table_args__ = (
        Index("ix_credit_ledger_user_created", "user_id", "created_at"),
        Index("ix_credit_ledger_user_period", "user_id", "period_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    transaction_type = Column(String, nullable=False, index=True)
    action_type = Column(String, nullable=True, index=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    bucket = Column(String, nullable=True)
    description = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    period_key = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
