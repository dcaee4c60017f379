"""Storage helpers: failure translation and dialect-aware idempotent inserts."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy import insert
from sqlalchemy.exc import DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from services.errors import StorageUnavailable

logger = logging.getLogger(__name__)

STORAGE_FAILURES = (OperationalError, InterfaceError, DisconnectionError, ConnectionError, asyncio.TimeoutError)


@asynccontextmanager
async def storage_guard(db: AsyncSession, operation: str) -> AsyncIterator[None]:
    """Roll back and raise StorageUnavailable when the store cannot be reached."""
    try:
        yield
    except STORAGE_FAILURES as exc:
        logger.error("Credit store unavailable during %s: %s", operation, exc)
        try:
            await db.rollback()
        except STORAGE_FAILURES as rollback_exc:
            logger.warning("Rollback after %s failure also failed: %s", operation, rollback_exc)
        raise StorageUnavailable(
            "Credit and quota store is unavailable. The request was denied; try again shortly."
        ) from exc


async def insert_ignore(db: AsyncSession, model: Any, values: Dict[str, Any]) -> None:
    """INSERT a row unless one with the same unique key already exists."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        try:
            async with db.begin_nested():
                await db.execute(insert(model).values(**values))
        except IntegrityError:
            logger.debug("%s row already present; insert skipped", model.__tablename__)
        return

    await db.execute(dialect_insert(model).values(**values).on_conflict_do_nothing())
