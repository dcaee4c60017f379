"""Generation quota authority.

Quotas are sliding windows counted straight from ``generation_requests``; there is no
separate counter to drift. Admission takes a per-identity guard row lock, re-counts and
inserts the ``pending`` row in one transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import ipaddress
import logging
import re
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.generation_request import GenerationRequest
from models.rate_limit_guard import RateLimitGuard
from services.clock import as_utc, next_top_of_hour, utc_now
from services.credits import has_purchased_credits
from services.errors import RateLimitExceeded, ValidationError
from services.storage import insert_ignore, storage_guard

logger = logging.getLogger(__name__)

HOUR_WINDOW = timedelta(hours=1)
DAY_WINDOW = timedelta(hours=24)
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,128}$")

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_RATE_LIMITED = "rate_limited"


class IdentifierType(str, Enum):
    IP = "ip"
    AUTHENTICATED_USER = "authenticated_user"
    ANONYMOUS_SESSION = "anonymous_session"


class Tier(str, Enum):
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PREMIUM = "premium"


@dataclass(frozen=True)
class TierLimits:
    hourly: int
    daily: int


def limits_for_tier(tier: Tier) -> TierLimits:
    configured = settings.tier_limits()[Tier(tier).value]
    return TierLimits(hourly=int(configured["hourly"]), daily=int(configured["daily"]))


def network_limits() -> TierLimits:
    """Ceiling shared by all anonymous sessions behind one client IP."""
    return TierLimits(
        hourly=int(settings.RATE_LIMIT_ANONYMOUS_IP_HOURLY),
        daily=int(settings.RATE_LIMIT_ANONYMOUS_IP_DAILY),
    )


@dataclass(frozen=True)
class RequestIdentity:
    """Who is asking. Built server-side from the session token, session header and socket."""

    ip_address: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None

    def primary(self) -> Tuple[str, IdentifierType]:
        if self.user_id:
            return self.user_id, IdentifierType.AUTHENTICATED_USER
        if self.session_id:
            return self.session_id, IdentifierType.ANONYMOUS_SESSION
        return self.ip_address, IdentifierType.IP

    def validate(self) -> None:
        try:
            ipaddress.ip_address((self.ip_address or "").strip())
        except ValueError as exc:
            raise ValidationError("A valid client IP address is required.") from exc
        if self.user_id is not None and not (0 < len(self.user_id.strip()) <= 128):
            raise ValidationError("user_id must be a non-empty identifier.")
        if self.session_id is not None and not SESSION_ID_PATTERN.match(self.session_id):
            raise ValidationError("session_id must be 8-128 characters of letters, digits, '-' or '_'.")


@dataclass(frozen=True)
class RateLimitStatus:
    can_proceed: bool
    hourly_count: int
    daily_count: int
    hourly_limit: int
    daily_limit: int
    reset_at: datetime
    tier: Optional[str] = None

    @property
    def hourly_remaining(self) -> int:
        return max(0, self.hourly_limit - self.hourly_count)

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_count)

    def after_admission(self) -> "RateLimitStatus":
        hourly = self.hourly_count + 1
        daily = self.daily_count + 1
        return replace(
            self,
            hourly_count=hourly,
            daily_count=daily,
            can_proceed=hourly < self.hourly_limit and daily < self.daily_limit,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "can_proceed": self.can_proceed,
            "hourly_remaining": self.hourly_remaining,
            "daily_remaining": self.daily_remaining,
            "hourly_limit": self.hourly_limit,
            "daily_limit": self.daily_limit,
            "reset_at": self.reset_at.isoformat(),
            "tier": self.tier,
        }


def _identity_column(identifier_type: IdentifierType):
    return {
        IdentifierType.IP: GenerationRequest.ip_address,
        IdentifierType.AUTHENTICATED_USER: GenerationRequest.user_id,
        IdentifierType.ANONYMOUS_SESSION: GenerationRequest.session_id,
    }[identifier_type]


def _normalize_identifier(identifier: str, identifier_type: Any) -> Tuple[str, IdentifierType]:
    try:
        kind = IdentifierType(identifier_type)
    except ValueError as exc:
        raise ValidationError(f"Unknown identifier_type: {identifier_type}.") from exc
    value = (identifier or "").strip()
    if not value:
        raise ValidationError("identifier is required.")
    return value, kind


async def _count_since(db: AsyncSession, identifier: str, identifier_type: IdentifierType, since: datetime) -> int:
    column = _identity_column(identifier_type)
    query = select(func.count(GenerationRequest.id)).where(
        column == identifier,
        GenerationRequest.created_at >= since,
        GenerationRequest.status != STATUS_RATE_LIMITED,
    )
    if identifier_type == IdentifierType.IP:
        # Signed-in users behind the same address do not use up the anonymous allowance.
        query = query.where(GenerationRequest.user_id.is_(None))
    result = await db.execute(query)
    return int(result.scalar() or 0)


async def _compute_status(
    db: AsyncSession,
    identifier: str,
    identifier_type: IdentifierType,
    limits: TierLimits,
    now: datetime,
    tier: Optional[str],
) -> RateLimitStatus:
    hourly_count = await _count_since(db, identifier, identifier_type, now - HOUR_WINDOW)
    daily_count = await _count_since(db, identifier, identifier_type, now - DAY_WINDOW)
    return RateLimitStatus(
        can_proceed=hourly_count < limits.hourly and daily_count < limits.daily,
        hourly_count=hourly_count,
        daily_count=daily_count,
        hourly_limit=limits.hourly,
        daily_limit=limits.daily,
        reset_at=next_top_of_hour(now),
        tier=tier,
    )


def _stricter(first: RateLimitStatus, second: RateLimitStatus) -> RateLimitStatus:
    """Whichever status is closer to, or past, its limit."""
    return min(
        (first, second),
        key=lambda status: (status.can_proceed, min(status.hourly_remaining, status.daily_remaining)),
    )


async def _admission_status(
    db: AsyncSession,
    identity: RequestIdentity,
    limits: TierLimits,
    now: datetime,
    tier: Optional[str],
) -> RateLimitStatus:
    """Quota status for an identity; anonymous sessions also answer to their IP's ceiling."""
    identifier, kind = identity.primary()
    status = await _compute_status(db, identifier, kind, limits, now, tier)
    if kind == IdentifierType.ANONYMOUS_SESSION:
        network = await _compute_status(db, identity.ip_address, IdentifierType.IP, network_limits(), now, tier)
        status = _stricter(status, network)
    return status


async def resolve_tier(identity: RequestIdentity, db: AsyncSession) -> Tier:
    """Derive the quota tier from server-side state only."""
    if not identity.user_id:
        return Tier.ANONYMOUS
    if await has_purchased_credits(identity.user_id, db):
        return Tier.PREMIUM
    return Tier.AUTHENTICATED


async def check_rate_limit(
    identifier: str,
    identifier_type: Any,
    db: AsyncSession,
    *,
    tier: Optional[Tier] = None,
    limits: Optional[TierLimits] = None,
    now: Optional[datetime] = None,
) -> RateLimitStatus:
    """Read-only quota status for an identity."""
    value, kind = _normalize_identifier(identifier, identifier_type)
    if tier is None:
        if kind == IdentifierType.AUTHENTICATED_USER:
            tier = Tier.PREMIUM if await has_purchased_credits(value, db) else Tier.AUTHENTICATED
        else:
            tier = Tier.ANONYMOUS
    effective = limits or limits_for_tier(tier)
    current = as_utc(now) if now else utc_now()
    async with storage_guard(db, "check_rate_limit"):
        status = await _compute_status(db, value, kind, effective, current, Tier(tier).value)
        await db.commit()
    return status


async def check_identity_rate_limit(
    identity: RequestIdentity,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> RateLimitStatus:
    identity.validate()
    tier = await resolve_tier(identity, db)
    current = as_utc(now) if now else utc_now()
    async with storage_guard(db, "check_rate_limit"):
        status = await _admission_status(db, identity, limits_for_tier(tier), current, tier.value)
        await db.commit()
    return status


async def _lock_identity(db: AsyncSession, identifier: str, kind: IdentifierType, now: datetime) -> None:
    await insert_ignore(
        db,
        RateLimitGuard,
        {
            "id": str(uuid.uuid4()),
            "identifier": identifier,
            "identifier_type": kind.value,
            "last_request_at": now,
        },
    )
    # The UPDATE takes the row (or database) write lock until commit.
    await db.execute(
        update(RateLimitGuard)
        .where(
            RateLimitGuard.identifier == identifier,
            RateLimitGuard.identifier_type == kind.value,
        )
        .values(last_request_at=now)
        .execution_options(synchronize_session=False)
    )


async def admit_generation_request(
    identity: RequestIdentity,
    db: AsyncSession,
    *,
    styles: Optional[List[str]] = None,
    payload_hash: Optional[str] = None,
    client_request_id: Optional[str] = None,
    limits: Optional[TierLimits] = None,
    now: Optional[datetime] = None,
) -> Tuple[GenerationRequest, RateLimitStatus, bool]:
    """Check quota and record a ``pending`` request as one atomic unit.

    Returns ``(request, status, created)``. ``created`` is False when ``client_request_id``
    matched an earlier request from the same identity. Raises ``RateLimitExceeded`` after
    recording a terminal ``rate_limited`` row.
    """
    identity.validate()
    identifier, kind = identity.primary()
    tier = await resolve_tier(identity, db)
    effective = limits or limits_for_tier(tier)
    current = as_utc(now) if now else utc_now()
    request_key = (client_request_id or "").strip() or None

    async with storage_guard(db, "admit_generation_request"):
        await _lock_identity(db, identifier, kind, current)
        if kind == IdentifierType.ANONYMOUS_SESSION:
            await _lock_identity(db, identity.ip_address, IdentifierType.IP, current)

        if request_key:
            result = await db.execute(
                select(GenerationRequest).where(GenerationRequest.client_request_id == request_key)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                owner = getattr(existing, _identity_column(kind).key)
                if owner != identifier:
                    await db.rollback()
                    raise ValidationError("client_request_id is already in use.")
                status = await _admission_status(db, identity, effective, current, tier.value)
                await db.commit()
                return existing, status, False

        status = await _admission_status(db, identity, effective, current, tier.value)
        row = GenerationRequest(
            id=str(uuid.uuid4()),
            user_id=identity.user_id,
            session_id=identity.session_id if not identity.user_id else None,
            ip_address=identity.ip_address,
            user_agent=(identity.user_agent or "")[:512] or None,
            payload_hash=payload_hash,
            styles_requested=list(styles or []),
            tier=tier.value,
            credits_consumed=0,
            created_at=current,
        )

        if not status.can_proceed:
            row.status = STATUS_RATE_LIMITED
            row.completed_at = current
            db.add(row)
            await db.commit()
            logger.info(
                "Rejected generation for %s %s (hourly %s/%s, daily %s/%s)",
                kind.value,
                identifier,
                status.hourly_count,
                status.hourly_limit,
                status.daily_count,
                status.daily_limit,
            )
            raise RateLimitExceeded(status, request_id=row.id)

        row.status = STATUS_PENDING
        row.client_request_id = request_key
        db.add(row)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ValidationError("client_request_id is already in use.") from exc

    return row, status.after_admission(), True
