"""
Payment reconciliation: the Paystack webhook, the orphan sweep and the
manual tools the back office uses on orphan payments.

An orphan is a captured payment with no order. It is recorded by the
webhook (or by checkout on an amount mismatch) and either matched later,
refunded, or flagged for a human.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, StoreError
from ..helpers import now_ts, to_iso
from ..paystack import PaymentGateway, PaystackError
from .db import Order, OrphanPayment
from .orders import load_order_by_reference
from .webhookevent import WebhookEventStore

log = logging.getLogger(__name__)

AUTO_REFUND_ORPHANS = os.environ.get(
    "AUTO_REFUND_ORPHANS", "false").lower() in ("1", "true", "yes")
ORPHAN_MIN_AGE_MINUTES = int(os.environ.get("ORPHAN_MIN_AGE_MINUTES", "10"))

PROVIDER_PAYSTACK = "paystack"
AUTO_REFUNDED_MARK = "Auto-refunded"


def serialize_orphan(o: OrphanPayment) -> Dict[str, Any]:
    return {
        "id": o.id,
        "reference": o.reference,
        "amount": o.amount,
        "currency": o.currency,
        "firstSeenAt": to_iso(o.first_seen_at),
        "reconciled": o.reconciled,
        "reconciledAt": to_iso(o.reconciled_at),
        "resolutionNote": o.resolution_note,
    }


async def _get_orphan(db: AsyncSession,
                      reference: str) -> Optional[OrphanPayment]:
    return (await db.execute(
        select(OrphanPayment).where(OrphanPayment.reference == reference)
    )).scalars().first()


def _already_auto_refunded(o: Optional[OrphanPayment]) -> bool:
    return bool(o and o.resolution_note
                and AUTO_REFUNDED_MARK in o.resolution_note)


async def _mark_order_paid(db: AsyncSession, order: Order,
                           tx: Dict[str, Any]) -> None:
    tx_id = str(tx["id"]) if tx.get("id") is not None else None
    if tx_id and order.payment_provider_id != tx_id:
        order.payment_provider_id = tx_id
    if not order.payment_verified:
        order.payment_verified = True


async def _reconcile_orphans_for(db: AsyncSession, reference: str,
                                 note: str) -> None:
    await db.execute(
        update(OrphanPayment)
        .where(OrphanPayment.reference == reference,
               OrphanPayment.reconciled.is_(False))
        .values(reconciled=True, reconciled_at=now_ts(),
                resolution_note=note)
        .execution_options(synchronize_session=False)
    )


# ----------------------------
# Webhook
# ----------------------------
async def handle_payment_webhook(
    db: AsyncSession, payments: PaymentGateway, events: WebhookEventStore,
    raw: bytes, signature: Optional[str],
) -> Dict[str, Any]:
    """Process one Paystack event. Raises StoreError with the HTTP status
    the provider should see."""
    if not payments.validate_signature(raw, signature):
        raise StoreError("Invalid signature", 400)

    try:
        body = json.loads(raw)
    except ValueError:
        raise StoreError("Invalid JSON payload", 400)
    if not isinstance(body, dict):
        raise StoreError("Invalid JSON payload", 400)

    event = body.get("event")
    data = body.get("data") or {}
    reference = data.get("reference") if isinstance(data, dict) else None
    if not reference:
        raise StoreError("Missing reference", 400)

    event_id = str(body.get("id") or f"{event}:{reference}")
    if not await events.record(PROVIDER_PAYSTACK, event_id, body):
        log.info("paystack event %s already processed", event_id)
        return {"ok": True, "message": "Duplicate event ignored"}

    if event != "charge.success":
        return {"ok": True, "message": "Event ignored"}

    try:
        tx = await payments.verify_transaction(reference)
    except PaystackError as e:
        log.error("paystack verify failed for %s: %s", reference, e.message)
        # let the provider retry go through
        await events.forget(event_id)
        raise StoreError("Verification failed", 500)

    order = await load_order_by_reference(db, reference)
    if order is None:
        orphan = await _get_orphan(db, reference)
        if orphan is None:
            db.add(OrphanPayment(
                reference=reference,
                amount=int(tx.get("amount") or 0),
                currency=str(tx.get("currency") or ""),
                payload=tx,
                reconciled=False,
                resolution_note=(
                    "Orphan payment recorded; awaiting manual resolution"
                ),
            ))
        else:
            orphan.amount = int(tx.get("amount") or 0)
            orphan.currency = str(tx.get("currency") or "")
            orphan.payload = tx
        await db.commit()
        log.warning("orphan payment recorded for reference %s", reference)
        return {"ok": True, "message": "Orphan payment recorded"}

    await _mark_order_paid(db, order, tx)
    await _reconcile_orphans_for(
        db, reference, "Payment matched to existing order"
    )
    await db.commit()
    return {"ok": True, "message": "Processed charge.success"}


# ----------------------------
# Sweep
# ----------------------------
async def _sweep_one(db: AsyncSession, payments: PaymentGateway,
                     orphan: OrphanPayment, auto_refund: bool,
                     summary: Dict[str, Any]) -> None:
    ref = orphan.reference
    if _already_auto_refunded(orphan):
        summary["skippedAlreadyAutoRefunded"] += 1
        return

    try:
        tx = await payments.verify_transaction(ref)
    except PaystackError as e:
        summary["errors"].append(
            f"Verification failed for {ref}: {e.message}"
        )
        return

    order = await load_order_by_reference(db, ref)
    if order is not None:
        orphan.reconciled = True
        orphan.reconciled_at = now_ts()
        orphan.resolution_note = "Order appeared during sweep; reconciled"
        await _mark_order_paid(db, order, tx)
        await db.commit()
        summary["alreadyResolved"] += 1
        return

    actual = int(tx.get("amount") or 0)
    if actual != orphan.amount:
        orphan.resolution_note = (
            f"Amount mismatch: orphan recorded {orphan.amount}, "
            f"actual {actual}; flagged for review"
        )
        await db.commit()
        summary["amountMismatches"] += 1
        return

    if auto_refund:
        try:
            refund = await payments.refund_transaction(
                tx.get("id") or ref,
                reason=(
                    "Auto-refund orphan payment during sweep "
                    "(no matching order)"
                ),
                metadata={"reference": ref},
            )
        except PaystackError as e:
            summary["errors"].append(f"Refund failed for {ref}: {e.message}")
            return
        orphan.reconciled = True
        orphan.reconciled_at = now_ts()
        orphan.resolution_note = (
            "Auto-refunded orphan payment during sweep; "
            f"refund id={refund.get('id')}"
        )
        await db.commit()
        summary["autoRefunded"] += 1
        log.info("orphan %s auto-refunded (refund %s)",
                 ref, refund.get("id"))
    else:
        orphan.resolution_note = (
            "Verified payment, no order exists; flagged for manual "
            "reconciliation"
        )
        await db.commit()
        summary["flagged"] += 1


async def sweep_orphans(
    db: AsyncSession, payments: PaymentGateway,
    auto_refund: Optional[bool] = None,
    min_age_minutes: Optional[int] = None,
) -> Dict[str, Any]:
    """Re-verify unreconciled orphans old enough to sweep.

    A failure on one orphan is reported in `errors` and the sweep moves on.
    """
    auto_refund = AUTO_REFUND_ORPHANS if auto_refund is None else auto_refund
    if min_age_minutes is None:
        min_age_minutes = ORPHAN_MIN_AGE_MINUTES
    cutoff = now_ts() - min_age_minutes * 60

    # references only: a rollback below expires loaded rows
    refs = (await db.execute(
        select(OrphanPayment.reference)
        .where(OrphanPayment.reconciled.is_(False),
               OrphanPayment.first_seen_at <= cutoff)
        .order_by(OrphanPayment.first_seen_at)
    )).scalars().all()

    summary: Dict[str, Any] = {
        "checked": 0,
        "alreadyResolved": 0,
        "autoRefunded": 0,
        "flagged": 0,
        "skippedAlreadyAutoRefunded": 0,
        "amountMismatches": 0,
        "errors": [],
    }

    for ref in refs:
        summary["checked"] += 1
        try:
            orphan = await _get_orphan(db, ref)
            if orphan is None:
                continue
            await _sweep_one(db, payments, orphan, auto_refund, summary)
        except SQLAlchemyError as e:
            await db.rollback()
            log.exception("orphan sweep failed for %s", ref)
            summary["errors"].append(f"Unhandled error for {ref}: {e}")

    return summary


# ----------------------------
# Manual tools
# ----------------------------
async def reconcile_reference(
    db: AsyncSession, payments: PaymentGateway, reference: Optional[str],
) -> Dict[str, Any]:
    if not reference:
        raise StoreError("Missing reference")

    try:
        tx = await payments.verify_transaction(reference)
    except PaystackError as e:
        raise StoreError(f"Failed to verify transaction: {e.message}", 400)

    orphan = await _get_orphan(db, reference)
    order = await load_order_by_reference(db, reference)
    if order is not None:
        if orphan is not None and not orphan.reconciled:
            orphan.reconciled = True
            orphan.reconciled_at = now_ts()
            orphan.resolution_note = "Manual reconcile: order already existed"
        await _mark_order_paid(db, order, tx)
        await db.commit()
        return {"ok": True,
                "message": "Order already exists; reconciled if needed"}

    if _already_auto_refunded(orphan):
        return {"ok": True,
                "message": "Orphan payment already auto-refunded previously"}

    try:
        refund = await payments.refund_transaction(
            tx.get("id") or reference,
            reason=(
                "Orphan payment: no matching order found during manual "
                "reconciliation"
            ),
            metadata={"reference": reference},
        )
    except PaystackError as e:
        log.error("refund failed for %s: %s", reference, e.message)
        raise StoreError("Refund failed", 500, details=e.message)

    note = (
        "Auto-refunded orphan payment during manual reconciliation; "
        f"refund id={refund.get('id')}"
    )
    if orphan is None:
        orphan = OrphanPayment(
            reference=reference,
            amount=int(tx.get("amount") or 0),
            currency=str(tx.get("currency") or ""),
            payload=tx,
        )
        db.add(orphan)
    orphan.reconciled = True
    orphan.reconciled_at = now_ts()
    orphan.resolution_note = note
    await db.commit()
    return {"ok": True, "message": "Orphan payment refunded",
            "refund": refund}


async def verify_reference(payments: PaymentGateway,
                           reference: str) -> Dict[str, Any]:
    try:
        tx = await payments.verify_transaction(reference)
    except PaystackError as e:
        raise StoreError(f"Verification failed: {e.message}", 400)
    return {
        "reference": reference,
        "status": tx.get("status"),
        "amount": tx.get("amount"),
        "currency": tx.get("currency"),
        "paidAt": tx.get("paid_at"),
        "id": tx.get("id"),
    }


async def seed_orphan(db: AsyncSession, payments: PaymentGateway,
                      reference: Optional[str]) -> Dict[str, Any]:
    if not reference:
        raise StoreError("Missing reference")
    try:
        tx = await payments.verify_transaction(reference)
    except PaystackError as e:
        raise StoreError(f"Verification failed: {e.message}", 400)

    orphan = await _get_orphan(db, reference)
    if orphan is None:
        orphan = OrphanPayment(
            reference=reference,
            resolution_note="Manually seeded from admin reconciliation tool",
        )
        db.add(orphan)
    else:
        orphan.resolution_note = (
            "Updated via manual seed from admin reconciliation tool"
        )
    orphan.amount = int(tx.get("amount") or 0)
    orphan.currency = str(tx.get("currency") or "")
    orphan.payload = tx
    orphan.reconciled = False
    orphan.reconciled_at = None
    await db.commit()
    return serialize_orphan(orphan)


async def resolve_orphan(db: AsyncSession,
                         reference: str) -> Dict[str, Any]:
    orphan = await _get_orphan(db, reference)
    if orphan is None:
        raise NotFound("Orphan payment not found")
    orphan.reconciled = True
    orphan.reconciled_at = now_ts()
    orphan.resolution_note = "Marked resolved by admin"
    await db.commit()
    return serialize_orphan(orphan)


async def list_orphans(db: AsyncSession) -> List[Dict[str, Any]]:
    rows = (await db.execute(
        select(OrphanPayment)
        .where(OrphanPayment.reconciled.is_(False))
        .order_by(OrphanPayment.first_seen_at.desc())
    )).scalars().all()
    return [serialize_orphan(o) for o in rows]
