from __future__ import annotations
from typing import Any
import redis.asyncio as redis


# ---- keys
def k_event(evt: str) -> str: return f"whevt:{evt}"


EVENT_TTL_SECONDS = 7 * 24 * 3600


class WebhookEventStore:
    """NX-set per event id; payloads stay with the provider."""

    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def record(
            self, provider: str, event_id: str, payload: Any
    ) -> bool:
        ok = await self.r.set(
            k_event(event_id), provider, nx=True, ex=EVENT_TTL_SECONDS
        )
        return bool(ok)

    async def forget(self, event_id: str) -> None:
        await self.r.delete(k_event(event_id))

    async def seen(self, event_id: str) -> bool:
        return bool(await self.r.exists(k_event(event_id)))
