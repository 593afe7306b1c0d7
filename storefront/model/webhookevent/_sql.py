from __future__ import annotations
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import WebhookEvent


class WebhookEventStore:
    """Dedup on the unique `webhook_events.event_id` index.

    `record()` commits on its own, so call it before any other pending
    work on the same session.
    """

    def __init__(self, *, db: AsyncSession) -> None:
        self.db = db

    async def record(
            self, provider: str, event_id: str, payload: Any
    ) -> bool:
        """True if this is the first time we see `event_id`."""
        self.db.add(WebhookEvent(
            provider=provider,
            event_id=event_id,
            payload=payload if payload is not None else {},
        ))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return False
        return True

    async def forget(self, event_id: str) -> None:
        """Drop the record so a provider retry is processed again."""
        await self.db.execute(
            delete(WebhookEvent).where(WebhookEvent.event_id == event_id)
        )
        await self.db.commit()

    async def seen(self, event_id: str) -> bool:
        row = (await self.db.execute(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
        )).first()
        return row is not None
