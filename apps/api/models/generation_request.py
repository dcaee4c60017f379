"""GenerationRequest model: one row per portrait generation attempt."""

import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


class GenerationRequest(Base):
    """Generation attempt lifecycle; also the log the rate limiter counts."""

    __tablename__ = "generation_requests"
    __table_args__ = (
        Index("ix_generation_requests_user_created", "user_id", "created_at"),
        Index("ix_generation_requests_session_created", "session_id", "created_at"),
        Index("ix_generation_requests_ip_created", "ip_address", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    session_id = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    payload_hash = Column(String, nullable=True, index=True)
    styles_requested = Column(JSON, nullable=True)
    client_request_id = Column(String, nullable=True, unique=True)
    tier = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)  # pending, processing, completed, failed, rate_limited
    credits_consumed = Column(Integer, nullable=False, default=0)
    debit_transaction_id = Column(String, ForeignKey("credit_transactions.id"), nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    # Set explicitly by the tracker so sliding windows use one clock.
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="generation_requests")
