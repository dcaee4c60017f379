"""Credit ledger: balances, debits, purchases and refunds.

Balances live in ``user_credits`` and are only changed by the conditional UPDATE
statements in this module; every change writes a ``credit_transactions`` row.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional
import logging
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_balance import CreditBalance
from models.credit_ledger import CreditTransaction
from models.user import User
from services.clock import as_utc, next_reference_midnight, reference_date, utc_now
from services.errors import InsufficientCredits, ValidationError
from services.storage import insert_ignore, storage_guard

logger = logging.getLogger(__name__)

KIND_EARN = "earn"
KIND_SPEND = "spend"
KIND_REFUND = "refund"
KIND_BONUS = "bonus"

SOURCE_FREE = "free"
SOURCE_PAID = "paid"
SOURCE_BONUS = "bonus"


@dataclass(frozen=True)
class CreditBalanceView:
    user_id: str
    free_remaining: int
    paid: int
    bonus: int
    used_today: int
    daily_free_limit: int
    reset_date: date

    @property
    def total_available(self) -> int:
        return self.free_remaining + self.paid + self.bonus

    def as_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "free_remaining": self.free_remaining,
            "paid": self.paid,
            "bonus": self.bonus,
            "total_available": self.total_available,
            "used_today": self.used_today,
            "daily_free_limit": self.daily_free_limit,
            "reset_date": self.reset_date.isoformat(),
        }


@dataclass(frozen=True)
class LedgerResult:
    transaction: CreditTransaction
    balance: CreditBalanceView
    created: bool

    @property
    def already_processed(self) -> bool:
        return not self.created


def _daily_free_limit() -> int:
    return max(int(settings.FREE_DAILY_CREDITS), 0)


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> None:
    """Provision the users row on first sight."""
    await insert_ignore(db, User, {"id": user_id, "email": email or f"{user_id}@local.invalid"})


async def _prepare_account(db: AsyncSession, user_id: str, today: date) -> None:
    """Ensure the balance row exists and apply the daily free-credit reset store-side."""
    if not user_id:
        raise ValidationError("user_id is required for credit operations.")
    await ensure_user(db, user_id)
    await insert_ignore(
        db,
        CreditBalance,
        {
            "user_id": user_id,
            "free_credits_used_today": 0,
            "paid_credits": 0,
            "bonus_credits": 0,
            "daily_reset_date": today,
        },
    )
    await db.execute(
        update(CreditBalance)
        .where(
            CreditBalance.user_id == user_id,
            CreditBalance.daily_reset_date != today,
        )
        .values(free_credits_used_today=0, daily_reset_date=today)
        .execution_options(synchronize_session=False)
    )


async def _load_view(db: AsyncSession, user_id: str) -> CreditBalanceView:
    result = await db.execute(
        select(
            CreditBalance.free_credits_used_today,
            CreditBalance.paid_credits,
            CreditBalance.bonus_credits,
            CreditBalance.daily_reset_date,
        ).where(CreditBalance.user_id == user_id)
    )
    row = result.one()
    limit = _daily_free_limit()
    used = int(row.free_credits_used_today or 0)
    return CreditBalanceView(
        user_id=user_id,
        free_remaining=max(0, limit - used),
        paid=max(int(row.paid_credits or 0), 0),
        bonus=max(int(row.bonus_credits or 0), 0),
        used_today=used,
        daily_free_limit=limit,
        reset_date=row.daily_reset_date,
    )


async def get_balance(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> CreditBalanceView:
    """Return the user's balance after reconciling the daily reset."""
    async with storage_guard(db, "get_balance"):
        await _prepare_account(db, user_id, reference_date(now))
        view = await _load_view(db, user_id)
        await db.commit()
    return view


async def has_purchased_credits(user_id: str, db: AsyncSession) -> bool:
    """True when the user holds paid or bonus credits. Read-only."""
    async with storage_guard(db, "has_purchased_credits"):
        result = await db.execute(
            select(CreditBalance.paid_credits, CreditBalance.bonus_credits).where(CreditBalance.user_id == user_id)
        )
        row = result.one_or_none()
    if row is None:
        return False
    return int(row.paid_credits or 0) > 0 or int(row.bonus_credits or 0) > 0


def _debit_statements(user_id: str, free_limit: int):
    """Conditional decrements in priority order: free, then paid, then bonus."""
    base = update(CreditBalance).where(CreditBalance.user_id == user_id)
    options = {"synchronize_session": False}
    yield SOURCE_FREE, base.where(CreditBalance.free_credits_used_today < free_limit).values(
        free_credits_used_today=CreditBalance.free_credits_used_today + 1
    ).execution_options(**options)
    yield SOURCE_PAID, base.where(CreditBalance.paid_credits > 0).values(
        paid_credits=CreditBalance.paid_credits - 1
    ).execution_options(**options)
    yield SOURCE_BONUS, base.where(CreditBalance.bonus_credits > 0).values(
        bonus_credits=CreditBalance.bonus_credits - 1
    ).execution_options(**options)


async def consume_credit(
    user_id: str,
    db: AsyncSession,
    *,
    description: str = "Portrait generation",
    generation_request_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Debit one credit atomically or raise InsufficientCredits.

    ``generation_request_id`` is stored on the spend row so the debit and its link to the
    request commit together.
    """
    current = as_utc(now) if now else utc_now()
    async with storage_guard(db, "consume_credit"):
        await _prepare_account(db, user_id, reference_date(current))

        source = None
        for candidate, statement in _debit_statements(user_id, _daily_free_limit()):
            result = await db.execute(statement)
            if result.rowcount:
                source = candidate
                break

        if source is None:
            await db.commit()
            logger.info("Credit debit refused for user %s: balance exhausted", user_id)
            raise InsufficientCredits(user_id, total_available=0)

        view = await _load_view(db, user_id)
        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=KIND_SPEND,
            amount=-1,
            balance_after=view.total_available,
            credit_source=source,
            generation_request_id=generation_request_id,
            description=description,
            created_at=current,
        )
        db.add(entry)
        await db.commit()
    return LedgerResult(transaction=entry, balance=view, created=True)


async def _find_by_reference(db: AsyncSession, payment_reference: str) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction).where(CreditTransaction.payment_reference == payment_reference)
    )
    return result.scalar_one_or_none()


async def find_transaction_by_reference(payment_reference: str, db: AsyncSession) -> Optional[CreditTransaction]:
    """The ledger entry already holding ``payment_reference``, if any. Read-only."""
    async with storage_guard(db, "find_transaction_by_reference"):
        return await _find_by_reference(db, payment_reference)


async def _find_refund_of(db: AsyncSession, transaction_id: str) -> Optional[CreditTransaction]:
    result = await db.execute(select(CreditTransaction).where(CreditTransaction.refund_of_id == transaction_id))
    return result.scalar_one_or_none()


async def _prior_result(db: AsyncSession, prior: CreditTransaction, today: date) -> LedgerResult:
    await _prepare_account(db, prior.user_id, today)
    view = await _load_view(db, prior.user_id)
    await db.commit()
    return LedgerResult(transaction=prior, balance=view, created=False)


def _check_prior_reference(prior: CreditTransaction, user_id: str, grant: int) -> None:
    if prior.user_id != user_id:
        raise ValidationError(
            "payment_reference is already attached to a different account.",
            payment_reference=prior.payment_reference,
        )
    if int(prior.amount) != grant:
        # The original grant stands; replays never re-price a payment.
        logger.warning(
            "Replayed payment %s requested %s credits; keeping original grant of %s",
            prior.payment_reference,
            grant,
            prior.amount,
        )


async def add_credits(
    user_id: str,
    amount: int,
    db: AsyncSession,
    *,
    payment_reference: Optional[str] = None,
    description: str = "Credit purchase",
    kind: str = KIND_EARN,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Credit an account. A known payment_reference returns the prior outcome unchanged."""
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("amount must be greater than 0.")
    if kind not in (KIND_EARN, KIND_BONUS):
        raise ValidationError(f"Unsupported credit kind: {kind}.")

    reference = (payment_reference or "").strip() or None
    current = as_utc(now) if now else utc_now()
    today = reference_date(current)
    source = SOURCE_PAID if kind == KIND_EARN else SOURCE_BONUS

    async with storage_guard(db, "add_credits"):
        if reference:
            prior = await _find_by_reference(db, reference)
            if prior is not None:
                _check_prior_reference(prior, user_id, grant)
                logger.info("Payment reference %s already applied; returning prior result", reference)
                return await _prior_result(db, prior, today)

        await _prepare_account(db, user_id, today)
        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=kind,
            amount=grant,
            credit_source=source,
            payment_reference=reference,
            description=description,
            created_at=current,
        )
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            prior = await _find_by_reference(db, reference) if reference else None
            if prior is None:
                raise
            _check_prior_reference(prior, user_id, grant)
            logger.info("Concurrent delivery of payment reference %s lost the insert race", reference)
            return await _prior_result(db, prior, today)

        column = CreditBalance.paid_credits if source == SOURCE_PAID else CreditBalance.bonus_credits
        await db.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values({column: column + grant})
            .execution_options(synchronize_session=False)
        )
        view = await _load_view(db, user_id)
        entry.balance_after = view.total_available
        await db.commit()
    return LedgerResult(transaction=entry, balance=view, created=True)


async def refund(
    original_transaction_id: str,
    db: AsyncSession,
    *,
    reason: str = "Refund for failed generation",
    now: Optional[datetime] = None,
) -> LedgerResult:
    """Issue the compensating refund for a spend. Refunding twice returns the first refund."""
    current = as_utc(now) if now else utc_now()
    today = reference_date(current)

    async with storage_guard(db, "refund"):
        result = await db.execute(select(CreditTransaction).where(CreditTransaction.id == original_transaction_id))
        original = result.scalar_one_or_none()
        if original is None:
            raise ValidationError("Unknown credit transaction.", transaction_id=original_transaction_id)
        if original.kind != KIND_SPEND:
            raise ValidationError("Only spend transactions can be refunded.", transaction_id=original_transaction_id)

        existing = await _find_refund_of(db, original.id)
        if existing is not None:
            return await _prior_result(db, existing, today)

        user_id = original.user_id
        await _prepare_account(db, user_id, today)

        target = original.credit_source or SOURCE_BONUS
        if target == SOURCE_FREE and original.created_at is not None:
            if reference_date(as_utc(original.created_at)) != today:
                # Yesterday's free allowance is gone; return the credit as bonus.
                target = SOURCE_BONUS

        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            kind=KIND_REFUND,
            amount=abs(int(original.amount)),
            credit_source=target,
            refund_of_id=original.id,
            description=reason,
            created_at=current,
        )
        db.add(entry)
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            existing = await _find_refund_of(db, original_transaction_id)
            if existing is None:
                raise
            return await _prior_result(db, existing, today)

        restored = False
        if target == SOURCE_FREE:
            restore = await db.execute(
                update(CreditBalance)
                .where(CreditBalance.user_id == user_id, CreditBalance.free_credits_used_today > 0)
                .values(free_credits_used_today=CreditBalance.free_credits_used_today - 1)
                .execution_options(synchronize_session=False)
            )
            restored = bool(restore.rowcount)
            if not restored:
                target = SOURCE_BONUS
                entry.credit_source = SOURCE_BONUS
        if not restored:
            column = CreditBalance.paid_credits if target == SOURCE_PAID else CreditBalance.bonus_credits
            await db.execute(
                update(CreditBalance)
                .where(CreditBalance.user_id == user_id)
                .values({column: column + entry.amount})
                .execution_options(synchronize_session=False)
            )

        view = await _load_view(db, user_id)
        entry.balance_after = view.total_available
        await db.commit()
    logger.info("Refunded transaction %s to %s credits for user %s", original_transaction_id, target, user_id)
    return LedgerResult(transaction=entry, balance=view, created=True)


async def get_credit_summary(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    view = await get_balance(user_id, db, now=now)
    async with storage_guard(db, "get_credit_summary"):
        purchased = await db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.kind == KIND_EARN,
            )
        )
        spent = await db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.kind == KIND_SPEND,
            )
        )
        refunded = await db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.kind == KIND_REFUND,
            )
        )
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(30)
        )
        entries = result.scalars().all()
    return {
        "balance": view.as_dict(),
        "next_free_reset_at": next_reference_midnight(now).isoformat(),
        "total_purchased": int(purchased.scalar() or 0),
        "total_used": max(int(spent.scalar() or 0) - int(refunded.scalar() or 0), 0),
        "recent_entries": [
            {
                "id": entry.id,
                "kind": entry.kind,
                "amount": entry.amount,
                "credit_source": entry.credit_source,
                "balance_after": entry.balance_after,
                "description": entry.description,
                "payment_reference": entry.payment_reference,
                "created_at": as_utc(entry.created_at).isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
