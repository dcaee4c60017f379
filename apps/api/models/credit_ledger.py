"""CreditTransaction model: append-only credit ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # earn, spend, refund, bonus
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    credit_source = Column(String, nullable=True)  # free, paid, bonus
    # Unique: one ledger entry per external payment.
    payment_reference = Column(String, nullable=True, unique=True)
    # Unique: a spend is refunded at most once.
    refund_of_id = Column(String, ForeignKey("credit_transactions.id"), nullable=True, unique=True)
    generation_request_id = Column(String, nullable=True, index=True)
    description = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="credit_entries")
