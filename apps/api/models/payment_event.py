"""PaymentEvent model: record of each payment event applied to the ledger."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class PaymentEvent(Base):
    """Written once, after the ledger credit succeeded. Never updated."""

    __tablename__ = "payment_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    external_payment_id = Column(String, nullable=False, unique=True)
    amount_cents = Column(Integer, nullable=False)
    customer_reference = Column(String, nullable=False, index=True)
    # Snapshot of the grant at first processing; replays never consult the price table.
    credits_granted = Column(Integer, nullable=False)
    price_table_version = Column(String, nullable=False)
    credit_transaction_id = Column(String, ForeignKey("credit_transactions.id"), nullable=True)
    source = Column(String, nullable=False, default="direct")  # direct, stripe
    processed_at = Column(DateTime(timezone=True), server_default=func.now())
