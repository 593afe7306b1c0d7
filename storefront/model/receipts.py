import logging
from typing import Dict

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..mail import Mailer, MailError, send_receipt_with_retry
from .db import ReceiptEmailStatus
from .orders import load_order, recipient_for

log = logging.getLogger(__name__)


async def retry_pending_receipts(db: AsyncSession,
                                 mailer: Mailer) -> Dict[str, int]:
    """Re-send every unsent receipt whose backoff has elapsed."""
    pending = (await db.execute(
        select(ReceiptEmailStatus.order_id, ReceiptEmailStatus.delivery_fee)
        .where(
            ReceiptEmailStatus.sent.is_(False),
            or_(ReceiptEmailStatus.next_retry_at <= now_ts(),
                ReceiptEmailStatus.next_retry_at.is_(None)),
        )
        .order_by(ReceiptEmailStatus.updated_at)
    )).all()

    processed = 0
    for order_id, delivery_fee in pending:
        order = await load_order(db, order_id)
        if order is None:
            continue
        # no recipient still counts as an attempt and backs off
        recipient = recipient_for(order) or {}
        try:
            # records the attempt and the next backoff itself
            await send_receipt_with_retry(
                db, mailer, order, recipient, order.currency,
                delivery_fee or 0.0,
            )
        except MailError as e:
            log.warning("receipt retry for order %s failed: %s",
                        order_id, e)
        processed += 1

    return {"processed": processed}
