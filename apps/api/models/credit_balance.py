"""CreditBalance model: per-user credit buckets."""

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditBalance(Base):
    """Mutable balance row. Only the ledger service writes to it, through conditional UPDATEs."""

    __tablename__ = "user_credits"
    __table_args__ = (
        CheckConstraint("free_credits_used_today >= 0", name="ck_user_credits_free_used_non_negative"),
        CheckConstraint("paid_credits >= 0", name="ck_user_credits_paid_non_negative"),
        CheckConstraint("bonus_credits >= 0", name="ck_user_credits_bonus_non_negative"),
    )

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    free_credits_used_today = Column(Integer, nullable=False, default=0, server_default="0")
    paid_credits = Column(Integer, nullable=False, default=0, server_default="0")
    bonus_credits = Column(Integer, nullable=False, default=0, server_default="0")
    daily_reset_date = Column(Date, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="credit_balance")
