"""Generation router: quota status, request lifecycle and portrait generation."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import get_request_identity
from routers.rate_limit import rate_limit
from services.credits import get_balance
from services.errors import RequestNotFound
from services.generation_tracker import (
    generate_portrait,
    get_request,
    mark_completed,
    mark_failed,
    mark_processing,
    serialize_request,
    start_generation,
)
from services.image_generation import ImageGenerator, get_image_generator
from services.rate_limits import IdentifierType, RequestIdentity, check_identity_rate_limit
from services.session_token import create_anonymous_session

router = APIRouter()
logger = logging.getLogger(__name__)


class StartGenerationRequest(BaseModel):
    styles: List[str] = Field(min_length=1, max_length=12)
    payload_hash: Optional[str] = Field(default=None, max_length=128)
    client_request_id: Optional[str] = Field(default=None, max_length=128)


class CompleteGenerationRequest(BaseModel):
    processing_time_ms: Optional[int] = Field(default=None, ge=0)


class FailGenerationRequest(BaseModel):
    processing_time_ms: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = Field(default=None, max_length=2000)


class PortraitRequest(BaseModel):
    image_data: str = Field(min_length=1)
    image_type: str = Field(default="image/jpeg", max_length=64)
    prompt: str = Field(min_length=1, max_length=4000)
    styles: List[str] = Field(min_length=1, max_length=12)
    client_request_id: Optional[str] = Field(default=None, max_length=128)


async def _owned_request(request_id: str, identity: RequestIdentity, db: AsyncSession):
    """Load a request that belongs to the caller. Someone else's request reads as missing."""
    request = await get_request(request_id, db)
    identifier, kind = identity.primary()
    owner = {
        IdentifierType.AUTHENTICATED_USER: request.user_id,
        IdentifierType.ANONYMOUS_SESSION: request.session_id,
        IdentifierType.IP: request.ip_address,
    }[kind]
    if owner != identifier:
        raise RequestNotFound("Generation request not found.", request_id=request_id)
    return request


@router.post("/session")
async def issue_anonymous_session(
    _rate_limit: None = Depends(rate_limit("generation_session", limit=30, window_seconds=3600)),
):
    """Issue a signed session for anonymous callers to send as X-Session-Id."""
    issued = create_anonymous_session()
    return {"session_id": issued["session_id"], "expires_at": issued["expires_at"]}


@router.get("/rate-limit")
async def rate_limit_status(
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    status = await check_identity_rate_limit(identity, db)
    _, kind = identity.primary()
    balance = await get_balance(identity.user_id, db) if identity.user_id else None
    return {
        "identifier_type": kind.value,
        "rate_limit": status.as_dict(),
        "balance": balance.as_dict() if balance else None,
    }


@router.post("/requests", status_code=201)
async def create_generation_request(
    body: StartGenerationRequest,
    _rate_limit: None = Depends(rate_limit("generation_start", limit=120, window_seconds=3600)),
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    """Admit a request and debit its credit. The caller must later complete or fail it."""
    start = await start_generation(
        identity,
        db,
        styles=body.styles,
        payload_hash=body.payload_hash,
        client_request_id=body.client_request_id,
    )
    return {
        "request": serialize_request(start.request),
        "rate_limit": start.rate_limit.as_dict(),
        "balance": start.balance.as_dict() if start.balance else None,
        "duplicate": not start.created,
    }


@router.get("/requests/{request_id}")
async def read_generation_request(
    request_id: str,
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    request = await _owned_request(request_id, identity, db)
    return {"request": serialize_request(request)}


@router.post("/requests/{request_id}/processing")
async def start_processing(
    request_id: str,
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    await _owned_request(request_id, identity, db)
    request = await mark_processing(request_id, db)
    return {"request": serialize_request(request)}


@router.post("/requests/{request_id}/complete")
async def complete_generation_request(
    request_id: str,
    body: CompleteGenerationRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    await _owned_request(request_id, identity, db)
    request = await mark_completed(request_id, db, processing_time_ms=body.processing_time_ms)
    return {"request": serialize_request(request)}


@router.post("/requests/{request_id}/fail")
async def fail_generation_request(
    request_id: str,
    body: FailGenerationRequest,
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
):
    await _owned_request(request_id, identity, db)
    resolution = await mark_failed(
        request_id,
        db,
        processing_time_ms=body.processing_time_ms,
        error_message=body.error_message,
    )
    return {
        "request": serialize_request(resolution.request),
        "refunded": resolution.refunded,
        "balance": resolution.balance.as_dict() if resolution.balance else None,
    }


@router.post("/portraits")
async def create_portrait(
    body: PortraitRequest,
    _rate_limit: None = Depends(rate_limit("generation_portrait", limit=120, window_seconds=3600)),
    identity: RequestIdentity = Depends(get_request_identity),
    db: AsyncSession = Depends(get_db),
    generator: ImageGenerator = Depends(get_image_generator),
):
    return await generate_portrait(
        identity,
        db,
        generator,
        image_data=body.image_data,
        image_type=body.image_type,
        prompt=body.prompt,
        styles=body.styles,
        client_request_id=body.client_request_id,
    )
