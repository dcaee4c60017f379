"""Billing and credits router."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import KIND_BONUS, add_credits, get_credit_summary
from services.payments import (
    STATUS_IGNORED,
    PaymentEventIn,
    list_price_tiers,
    parse_stripe_checkout_event,
    reconcile_payment_event,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class BonusGrantRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    credits: int = Field(ge=1, le=10000)
    reference: Optional[str] = Field(default=None, max_length=255)
    reason: str = Field(default="Bonus credits", max_length=255)


def _require_secret(configured: str, supplied: Optional[str], name: str) -> None:
    expected = (configured or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail=f"{name} is not configured.")
    if not supplied or not hmac.compare_digest(expected, supplied.strip()):
        raise HTTPException(status_code=401, detail=f"Invalid {name}.")


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(auth.user_id, db)


@router.get("/price-tiers")
async def price_tiers():
    return list_price_tiers()


@router.post("/payment-events")
async def receive_payment_event(
    event: PaymentEventIn,
    x_webhook_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Apply a normalized payment-completed event. Safe to redeliver."""
    _require_secret(settings.PAYMENT_WEBHOOK_SECRET, x_webhook_secret, "PAYMENT_WEBHOOK_SECRET")
    result = await reconcile_payment_event(event, db)
    return result.as_dict()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("stripe_webhook", limit=600, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    event = parse_stripe_checkout_event(payload, stripe_signature)
    if event is None:
        return {"status": STATUS_IGNORED}
    result = await reconcile_payment_event(event, db, source="stripe")
    return result.as_dict()


@router.post("/bonus")
async def grant_bonus(
    body: BonusGrantRequest,
    x_admin_key: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Operator grant. ``reference`` makes the grant idempotent."""
    _require_secret(settings.ADMIN_API_KEY, x_admin_key, "ADMIN_API_KEY")
    result = await add_credits(
        body.user_id,
        body.credits,
        db,
        payment_reference=body.reference,
        description=body.reason,
        kind=KIND_BONUS,
    )
    logger.info("Bonus grant of %s credits to %s (reference=%s)", body.credits, body.user_id, body.reference)
    return {
        "status": "already_processed" if result.already_processed else "processed",
        "transaction_id": result.transaction.id,
        "credits_granted": int(result.transaction.amount),
        "balance": result.balance.as_dict(),
    }
