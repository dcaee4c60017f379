"""Generation request lifecycle.

``pending`` rows are created by the rate limiter's admission step. From there:
pending -> processing -> completed | failed. ``rate_limited`` is terminal and set only at
admission. Resolving a request to ``failed`` refunds its debit; nothing times out on
its own, so callers must resolve every request they start.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
import hashlib
import logging
import time

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditTransaction
from models.generation_request import GenerationRequest
from services.clock import as_utc, utc_now
from services.credits import KIND_SPEND, CreditBalanceView, consume_credit, get_balance, refund
from services.errors import (
    GenerationFailed,
    InsufficientCredits,
    InvalidTransition,
    RequestNotFound,
    StorageUnavailable,
    ValidationError,
)
from services.image_generation import ImageGenerator
from services.rate_limits import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    RateLimitStatus,
    RequestIdentity,
    admit_generation_request,
)
from services.storage import storage_guard

logger = logging.getLogger(__name__)

ALLOWED_FROM = {
    STATUS_PROCESSING: (STATUS_PENDING,),
    STATUS_COMPLETED: (STATUS_PROCESSING,),
    STATUS_FAILED: (STATUS_PENDING, STATUS_PROCESSING),
}
MAX_STYLES = 12


@dataclass
class GenerationStart:
    request: GenerationRequest
    rate_limit: RateLimitStatus
    balance: Optional[CreditBalanceView]
    created: bool


@dataclass
class GenerationResolution:
    request: GenerationRequest
    refunded: bool = False
    balance: Optional[CreditBalanceView] = None


def hash_payload(image_data: str, prompt: str) -> str:
    """Fingerprint of image + prompt for duplicate detection."""
    digest = hashlib.sha256()
    digest.update((image_data or "").encode("utf-8"))
    digest.update((prompt or "").encode("utf-8"))
    return digest.hexdigest()


def _clean_styles(styles: Optional[List[str]]) -> List[str]:
    cleaned = [str(style).strip() for style in (styles or []) if str(style).strip()]
    if not cleaned:
        raise ValidationError("At least one style is required.")
    if len(cleaned) > MAX_STYLES:
        raise ValidationError(f"At most {MAX_STYLES} styles can be requested at once.")
    return cleaned


async def get_request(request_id: str, db: AsyncSession) -> GenerationRequest:
    async with storage_guard(db, "get_request"):
        result = await db.execute(
            select(GenerationRequest)
            .where(GenerationRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
    if request is None:
        raise RequestNotFound("Generation request not found.", request_id=request_id)
    return request


async def _find_debit(db: AsyncSession, request_id: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.generation_request_id == request_id,
            CreditTransaction.kind == KIND_SPEND,
        )
    )
    return result.scalar_one_or_none()


async def _transition(
    db: AsyncSession,
    request_id: str,
    target: str,
    *,
    processing_time_ms: Optional[int] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GenerationRequest:
    values: Dict[str, Any] = {"status": target}
    if target in (STATUS_COMPLETED, STATUS_FAILED):
        values["completed_at"] = as_utc(now) if now else utc_now()
    if processing_time_ms is not None:
        if int(processing_time_ms) < 0:
            raise ValidationError("processing_time_ms cannot be negative.")
        values["processing_time_ms"] = int(processing_time_ms)
    if error_message:
        values["error_message"] = str(error_message)[:2000]

    async with storage_guard(db, f"transition_to_{target}"):
        result = await db.execute(
            update(GenerationRequest)
            .where(
                GenerationRequest.id == request_id,
                GenerationRequest.status.in_(ALLOWED_FROM[target]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    request = await get_request(request_id, db)
    if not result.rowcount and request.status != target:
        raise InvalidTransition(request.status, target)
    return request


async def start_generation(
    identity: RequestIdentity,
    db: AsyncSession,
    *,
    styles: Optional[List[str]],
    payload_hash: Optional[str] = None,
    client_request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GenerationStart:
    """Admit a request and debit one credit for authenticated users.

    Anonymous callers have no ledger account; the anonymous quota is their allowance.
    """
    cleaned = _clean_styles(styles)
    request, status, created = await admit_generation_request(
        identity,
        db,
        styles=cleaned,
        payload_hash=payload_hash,
        client_request_id=client_request_id,
        now=now,
    )
    if not identity.user_id:
        return GenerationStart(request=request, rate_limit=status, balance=None, created=created)
    if not created:
        balance = await get_balance(identity.user_id, db, now=now)
        return GenerationStart(request=request, rate_limit=status, balance=balance, created=False)

    try:
        debit = await consume_credit(
            identity.user_id,
            db,
            description=f"Portrait generation ({', '.join(cleaned)})",
            generation_request_id=request.id,
            now=now,
        )
    except InsufficientCredits:
        await _transition(db, request.id, STATUS_FAILED, error_message="Insufficient credits", now=now)
        raise
    except StorageUnavailable:
        try:
            await _transition(db, request.id, STATUS_FAILED, error_message="Credit store unavailable", now=now)
        except StorageUnavailable:
            logger.error("Request %s left pending; credit store unavailable", request.id)
        raise

    async with storage_guard(db, "link_debit"):
        await db.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == request.id)
            .values(credits_consumed=1, debit_transaction_id=debit.transaction.id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    request = await get_request(request.id, db)
    return GenerationStart(request=request, rate_limit=status, balance=debit.balance, created=True)


async def mark_processing(request_id: str, db: AsyncSession) -> GenerationRequest:
    return await _transition(db, request_id, STATUS_PROCESSING)


async def mark_completed(
    request_id: str,
    db: AsyncSession,
    *,
    processing_time_ms: Optional[int] = None,
    now: Optional[datetime] = None,
) -> GenerationRequest:
    return await _transition(db, request_id, STATUS_COMPLETED, processing_time_ms=processing_time_ms, now=now)


async def mark_failed(
    request_id: str,
    db: AsyncSession,
    *,
    processing_time_ms: Optional[int] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> GenerationResolution:
    """Fail a request and refund its debit. Safe to call again if the refund did not land."""
    request = await _transition(
        db,
        request_id,
        STATUS_FAILED,
        processing_time_ms=processing_time_ms,
        error_message=error_message,
        now=now,
    )
    async with storage_guard(db, "find_debit"):
        debit = await _find_debit(db, request_id)
    if debit is None:
        return GenerationResolution(request=request)

    refunded = await refund(debit.id, db, reason=f"Refund for failed generation {request_id}", now=now)
    async with storage_guard(db, "clear_consumed_credits"):
        await db.execute(
            update(GenerationRequest)
            .where(GenerationRequest.id == request_id)
            .values(credits_consumed=0)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    request = await get_request(request_id, db)
    return GenerationResolution(request=request, refunded=True, balance=refunded.balance)


async def generate_portrait(
    identity: RequestIdentity,
    db: AsyncSession,
    generator: ImageGenerator,
    *,
    image_data: str,
    image_type: str,
    prompt: str,
    styles: List[str],
    client_request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Admit, debit, call the provider and resolve the request."""
    if not (image_data or "").strip():
        raise ValidationError("image_data is required.")
    if not (prompt or "").strip():
        raise ValidationError("prompt is required.")

    start = await start_generation(
        identity,
        db,
        styles=styles,
        payload_hash=hash_payload(image_data, prompt),
        client_request_id=client_request_id,
    )
    request = start.request
    if not start.created:
        return {
            "request": serialize_request(request),
            "rate_limit": start.rate_limit.as_dict(),
            "balance": start.balance.as_dict() if start.balance else None,
            "duplicate": True,
        }

    await mark_processing(request.id, db)
    started = time.monotonic()
    try:
        image = await generator.generate(
            image_data=image_data,
            image_type=image_type,
            prompt=prompt,
            style=(request.styles_requested or ["classic"])[0],
        )
    except Exception as exc:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.warning("Portrait generation %s failed: %s", request.id, exc)
        resolution = await mark_failed(request.id, db, processing_time_ms=elapsed_ms, error_message=str(exc))
        raise GenerationFailed(
            "Portrait generation failed.",
            request_id=request.id,
            refunded=resolution.refunded,
            error=str(exc),
        ) from exc

    elapsed_ms = int((time.monotonic() - started) * 1000)
    completed = await mark_completed(request.id, db, processing_time_ms=elapsed_ms)
    return {
        "request": serialize_request(completed),
        "image": {"image_url": image.image_url, "text": image.text},
        "rate_limit": start.rate_limit.as_dict(),
        "balance": start.balance.as_dict() if start.balance else None,
        "duplicate": False,
    }


def serialize_request(request: GenerationRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "status": request.status,
        "styles_requested": list(request.styles_requested or []),
        "tier": request.tier,
        "credits_consumed": int(request.credits_consumed or 0),
        "processing_time_ms": request.processing_time_ms,
        "error_message": request.error_message,
        "created_at": as_utc(request.created_at).isoformat() if request.created_at else None,
        "completed_at": as_utc(request.completed_at).isoformat() if request.completed_at else None,
    }
