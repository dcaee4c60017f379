"""Per-identity guard row locked while a generation request is admitted."""

import uuid

from sqlalchemy import Column, DateTime, String, UniqueConstraint

from database import Base


class RateLimitGuard(Base):
    __tablename__ = "rate_limit_guards"
    __table_args__ = (
        UniqueConstraint("identifier", "identifier_type", name="uq_rate_limit_guards_identity"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    identifier = Column(String, nullable=False)
    identifier_type = Column(String, nullable=False)  # ip, authenticated_user, anonymous_session
    last_request_at = Column(DateTime(timezone=True), nullable=True)
