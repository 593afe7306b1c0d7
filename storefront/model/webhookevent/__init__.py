import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

BACKEND = os.getenv("EVENT_STORE_BACKEND", "sql").lower()  # 'sql' | 'redis'

from ._sql import WebhookEventStore as SqlWebhookEventStore  # noqa: E402
from ._redis import WebhookEventStore as RedisWebhookEventStore  # noqa: E402


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              backend: Optional[str] = None):
    backend = (backend or BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookEventStore(redis) requires r=redis.Redis"
            )
        return RedisWebhookEventStore(r=r)
    if db is None:
        raise RuntimeError("WebhookEventStore(sql) requires db=AsyncSession")
    return SqlWebhookEventStore(db=db)


WebhookEventStore = SqlWebhookEventStore | RedisWebhookEventStore
__all__ = [
    "WebhookEventStore", "SqlWebhookEventStore", "RedisWebhookEventStore",
    "new_store", "BACKEND",
]
