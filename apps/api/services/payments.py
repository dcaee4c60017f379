"""
Payment reconciliation: turn completed payments into ledger credits exactly once.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import json
import logging
import uuid

import stripe
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment_event import PaymentEvent
from services.clock import as_utc, utc_now
from services.credits import CreditBalanceView, add_credits, find_transaction_by_reference, get_balance
from services.errors import UnknownPriceTier, ValidationError
from services.storage import storage_guard

logger = logging.getLogger(__name__)

# amount in cents -> credits granted
PRICE_TIERS: Dict[int, int] = {
    499: 10,
    999: 25,
    2499: 75,
}
PRICE_TABLE_VERSION = "2025-09"

STATUS_PROCESSED = "processed"
STATUS_ALREADY_PROCESSED = "already_processed"
STATUS_IGNORED = "ignored"


class PaymentEventIn(BaseModel):
    external_payment_id: str = Field(min_length=1, max_length=255)
    amount_cents: int
    customer_reference: str = Field(min_length=1, max_length=128)

    @field_validator("external_payment_id", "customer_reference")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


@dataclass
class ReconcileResult:
    status: str
    external_payment_id: str
    credits_granted: int
    balance: Optional[CreditBalanceView] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "external_payment_id": self.external_payment_id,
            "credits_granted": self.credits_granted,
            "balance": self.balance.as_dict() if self.balance else None,
        }


def credits_for_amount(amount_cents: int) -> int:
    """Look up a credit pack by exact price. Unknown amounts are never defaulted."""
    credits = PRICE_TIERS.get(int(amount_cents))
    if credits is None:
        logger.error("Payment amount %s cents matches no price tier", amount_cents)
        raise UnknownPriceTier(int(amount_cents))
    return credits


def list_price_tiers() -> Dict[str, Any]:
    return {
        "version": PRICE_TABLE_VERSION,
        "tiers": [
            {"amount_cents": amount, "credits": credits}
            for amount, credits in sorted(PRICE_TIERS.items())
        ],
    }


async def _find_event(db: AsyncSession, external_payment_id: str) -> Optional[PaymentEvent]:
    result = await db.execute(
        select(PaymentEvent).where(PaymentEvent.external_payment_id == external_payment_id)
    )
    return result.scalar_one_or_none()


async def _already_processed(db: AsyncSession, event: PaymentEvent, now: Optional[datetime]) -> ReconcileResult:
    balance = await get_balance(event.customer_reference, db, now=now)
    return ReconcileResult(
        status=STATUS_ALREADY_PROCESSED,
        external_payment_id=event.external_payment_id,
        credits_granted=int(event.credits_granted),
        balance=balance,
    )


async def reconcile_payment_event(
    event: PaymentEventIn,
    db: AsyncSession,
    *,
    source: str = "direct",
    now: Optional[datetime] = None,
) -> ReconcileResult:
    """Apply a payment-completed event to the ledger.

    Redeliveries return ``already_processed`` with the credits granted the first time,
    even if the price table has changed since. A payment the ledger already holds is
    never re-priced.
    """
    payment_id = event.external_payment_id

    async with storage_guard(db, "find_payment_event"):
        existing = await _find_event(db, payment_id)
    if existing is not None:
        logger.info("Payment %s already processed; skipping", payment_id)
        return await _already_processed(db, existing, now)

    prior = await find_transaction_by_reference(payment_id, db)
    if prior is not None:
        if prior.user_id != event.customer_reference:
            raise ValidationError(
                "payment_reference is already attached to a different account.",
                payment_reference=payment_id,
            )
        granted = int(prior.amount)
        transaction_id = prior.id
        balance = None
        ledger_created = False
        logger.info("Payment %s was already in the ledger; recording event snapshot", payment_id)
    else:
        credits = credits_for_amount(event.amount_cents)
        ledger = await add_credits(
            event.customer_reference,
            credits,
            db,
            payment_reference=payment_id,
            description=f"Credit pack purchase ({event.amount_cents} cents)",
            now=now,
        )
        # On a ledger race the prior transaction's amount is the grant of record.
        granted = int(ledger.transaction.amount)
        transaction_id = ledger.transaction.id
        balance = ledger.balance
        ledger_created = ledger.created

    async with storage_guard(db, "record_payment_event"):
        db.add(
            PaymentEvent(
                id=str(uuid.uuid4()),
                external_payment_id=payment_id,
                amount_cents=int(event.amount_cents),
                customer_reference=event.customer_reference,
                credits_granted=granted,
                price_table_version=PRICE_TABLE_VERSION,
                credit_transaction_id=transaction_id,
                source=source,
                processed_at=as_utc(now) if now else utc_now(),
            )
        )
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            racing = await _find_event(db, payment_id)
            if racing is None:
                raise
            logger.info("Payment %s recorded by a concurrent delivery", payment_id)
            if not ledger_created:
                return await _already_processed(db, racing, now)

    if not ledger_created:
        return ReconcileResult(
            status=STATUS_ALREADY_PROCESSED,
            external_payment_id=payment_id,
            credits_granted=granted,
            balance=balance or await get_balance(event.customer_reference, db, now=now),
        )

    logger.info(
        "Granted %s credits to %s for payment %s (%s cents)",
        granted,
        event.customer_reference,
        payment_id,
        event.amount_cents,
    )
    return ReconcileResult(
        status=STATUS_PROCESSED,
        external_payment_id=payment_id,
        credits_granted=granted,
        balance=balance,
    )


def parse_stripe_checkout_event(payload: bytes, signature: Optional[str]) -> Optional[PaymentEventIn]:
    """Verify a Stripe webhook and map ``checkout.session.completed`` to a payment event.

    Returns None for event types that carry no credit purchase.
    """
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise ValidationError("Stripe webhooks are not configured.")
    if not signature:
        raise ValidationError("Missing Stripe-Signature header.")

    try:
        stripe.WebhookSignature.verify_header(
            payload, signature, secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as exc:
        logger.error("Invalid Stripe webhook signature")
        raise ValidationError("Invalid webhook signature.") from exc
    try:
        stripe_event = json.loads(payload)
    except ValueError as exc:
        logger.error("Invalid Stripe webhook payload")
        raise ValidationError("Invalid webhook payload.") from exc
    if not isinstance(stripe_event, dict):
        raise ValidationError("Invalid webhook payload.")

    event_type = stripe_event.get("type")
    if event_type != "checkout.session.completed":
        logger.info("Ignoring Stripe event %s", event_type)
        return None

    session = (stripe_event.get("data") or {}).get("object") or {}
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    amount_total = session.get("amount_total")
    payment_id = session.get("payment_intent") or session.get("id")
    if not user_id or amount_total is None or not payment_id:
        logger.error("Stripe checkout session %s is missing user_id, amount or payment id", session.get("id"))
        raise ValidationError("Checkout session is missing required payment fields.")

    return PaymentEventIn(
        external_payment_id=str(payment_id),
        amount_cents=int(amount_total),
        customer_reference=str(user_id),
    )
