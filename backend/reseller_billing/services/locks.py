from __future__ import annotations
import logging
import uuid
from contextlib import contextmanager
from typing import TypeVar

import redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reseller_billing.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _client() -> redis.Redis:
    return redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)

@contextmanager
def redis_lock(key: str, ttl_seconds: int = 120):
    """Simple distributed lock using SET NX EX."""
    token = str(uuid.uuid4())
    c = _client()
    acquired = c.set(key, token, nx=True, ex=ttl_seconds)
    try:
        yield bool(acquired)
    finally:
        # only delete if the token still matches
        try:
            val = c.get(key)
            if val == token:
                c.delete(key)
        except redis.RedisError as e:
            logger.warning("redis_lock release failed key=%s err=%s", key, str(e)[:220])


async def lock_row(db: AsyncSession, model: type[T], row_id: int) -> T | None:
    """SELECT ... FOR UPDATE, refreshing any copy already in the identity map."""
    q = await db.execute(
        select(model)
        .where(model.id == row_id)  # type: ignore[attr-defined]
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return q.scalar_one_or_none()
