"""
Checkout and back-office order operations.

All functions take an AsyncSession and commit their own work. Provider
clients (payments, mail) are passed in so routes and tests can swap them.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, StoreError
from ..helpers import now_ts, to_iso, to_lowest
from ..infra.timings import timeit
from ..mail import (
    Mailer, MailError, send_receipt_with_retry, send_status_email,
)
from ..paystack import PaymentGateway, PaystackError
from .db import (
    CHANNEL_OFFLINE, CHANNEL_ONLINE, CURRENCIES, ORDER_CANCELLED,
    ORDER_PROCESSING, ORDER_STATUSES, Customer, DeliveryOption, Order,
    OrderItem, OrderSerial, OrphanPayment, ReceiptEmailStatus, Variant,
    WishlistItem,
)

log = logging.getLogger(__name__)

ORDER_ID_PREFIX = os.environ.get("ORDER_ID_PREFIX", "ORD")


def format_order_id(serial: int) -> str:
    return f"{ORDER_ID_PREFIX}-{serial:03d}"


# ----------------------------
# Loading / serialisation
# ----------------------------
async def load_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    # populate_existing: refresh relationships on identity-map hits
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def load_order_by_reference(
    db: AsyncSession, reference: str
) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.payment_reference == reference)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


def serialize_item(i: OrderItem) -> Dict[str, Any]:
    return {
        "id": i.id,
        "variantId": i.variant_id,
        "name": i.name,
        "image": i.image,
        "category": i.category,
        "quantity": i.quantity,
        "currency": i.currency,
        "lineTotal": i.line_total,
        "color": i.color,
        "size": i.size,
        "hasSizeMod": i.has_size_mod,
        "sizeModFee": i.size_mod_fee,
        "customSize": i.custom_size,
    }


def serialize_order(o: Order, with_items: bool = True) -> Dict[str, Any]:
    out = {
        "id": o.id,
        "status": o.status,
        "currency": o.currency,
        "totalAmount": o.total_amount,
        "totalNGN": o.total_ngn,
        "paymentMethod": o.payment_method,
        "paymentReference": o.payment_reference,
        "paymentProviderId": o.payment_provider_id,
        "paymentVerified": o.payment_verified,
        "createdAt": to_iso(o.created_at),
        "customerId": o.customer_id,
        "guestInfo": o.guest_info,
        "channel": o.channel,
        "deliveryOptionId": o.delivery_option_id,
        "deliveryFee": o.delivery_fee,
        "deliveryDetails": o.delivery_details,
    }
    if with_items:
        out["items"] = [serialize_item(i) for i in o.items]
    return out


def recipient_for(order: Order) -> Optional[Dict[str, Any]]:
    """Registered customer first, guest info otherwise."""
    if order.customer is not None:
        c = order.customer
        return {
            "firstName": c.first_name,
            "lastName": c.last_name,
            "email": c.email,
            "phone": c.phone or None,
            "deliveryAddress": c.delivery_address,
            "billingAddress": c.billing_address,
        }
    if isinstance(order.guest_info, dict):
        g = order.guest_info
        return {
            "firstName": g.get("firstName") or "",
            "lastName": g.get("lastName") or "",
            "email": g.get("email") or "",
            "phone": g.get("phone"),
            "deliveryAddress": g.get("deliveryAddress"),
            "billingAddress": g.get("billingAddress"),
        }
    return None


# ----------------------------
# Checkout
# ----------------------------
def _variant_filter(item: Dict[str, Any]):
    conds = [Variant.product_id == item.get("productId")]
    color = item.get("color")
    size = item.get("size")
    # "N/A" from the cart means the product has no such dimension
    if color and color != "N/A":
        conds.append(Variant.color == color)
    if size and size != "N/A":
        conds.append(Variant.size == size)
    return conds


async def _find_variant(db: AsyncSession,
                        item: Dict[str, Any]) -> Optional[Variant]:
    result = await db.execute(
        select(Variant).where(*_variant_filter(item)).limit(1)
    )
    return result.scalars().first()


def _quantity(item: Dict[str, Any]) -> int:
    try:
        qty = int(item.get("quantity") or 0)
    except (TypeError, ValueError):
        qty = 0
    if qty <= 0:
        raise StoreError(
            f"Invalid quantity for product {item.get('productId')}"
        )
    return qty


def _number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    return None


def _guest_info(customer: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "firstName": customer.get("firstName"),
        "lastName": customer.get("lastName"),
        "email": customer.get("email"),
        "phone": customer.get("phone"),
        "deliveryAddress": customer.get("deliveryAddress"),
        "billingAddress": customer.get("billingAddress"),
        "country": customer.get("country"),
        "state": customer.get("state"),
    }


async def _record_amount_mismatch(db: AsyncSession, reference: str,
                                  tx: Dict[str, Any]) -> None:
    try:
        orphan = (await db.execute(
            select(OrphanPayment).where(OrphanPayment.reference == reference)
        )).scalars().first()
        if orphan is None:
            db.add(OrphanPayment(
                reference=reference,
                amount=int(tx.get("amount") or 0),
                currency=str(tx.get("currency") or ""),
                payload=tx,
                reconciled=False,
                resolution_note=(
                    "Amount mismatch between expected order total and "
                    "captured payment"
                ),
            ))
        else:
            orphan.amount = int(tx.get("amount") or 0)
            orphan.currency = str(tx.get("currency") or "")
            orphan.payload = tx
            orphan.resolution_note = (
                "Updated: amount mismatch between expected and captured "
                "payment"
            )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        log.exception("could not record orphan payment %s", reference)


async def _patch_payment(db: AsyncSession, order: Order,
                         tx: Dict[str, Any]) -> bool:
    changed = False
    tx_id = str(tx["id"]) if tx.get("id") is not None else None
    if tx_id and order.payment_provider_id != tx_id:
        order.payment_provider_id = tx_id
        changed = True
    if not order.payment_verified:
        order.payment_verified = True
        changed = True
    if changed:
        await db.commit()
    return changed


async def _send_receipt_best_effort(
    db: AsyncSession, mailer: Mailer, order: Order,
    recipient: Dict[str, Any], currency: str, delivery_fee: float,
) -> None:
    try:
        await send_receipt_with_retry(
            db, mailer, order, recipient, currency, delivery_fee
        )
    except MailError as e:
        # the retry sweep picks it up from receipt_email_status
        log.warning("Failed to send receipt email for order %s: %s",
                    order.id, e)


async def _price_lines(db: AsyncSession, items: List[Dict[str, Any]],
                       currency: str, size_mod_rate: Optional[float] = None):
    """Resolve variants, check stock and price each line.

    With `size_mod_rate` the size modification fee is that share of the
    line (products with size mods only), otherwise the cart's per-unit
    `sizeModFee` is charged. Returns (lines, subtotal, total_ngn, weight).
    """
    subtotal = 0.0
    total_ngn = 0.0
    total_weight = 0.0
    lines = []
    for raw in items:
        if not isinstance(raw, dict) or not raw.get("productId"):
            raise StoreError("Invalid item format")
        qty = _quantity(raw)
        variant = await _find_variant(db, raw)
        if variant is None:
            raise StoreError(
                f"Variant not found: {raw.get('productId')} "
                f"{raw.get('color')}/{raw.get('size')}"
            )
        product = variant.product
        if variant.stock < qty:
            raise StoreError(f"Insufficient stock for {product.name}")

        line_total = product.price_in(currency) * qty
        if size_mod_rate is None:
            size_mod_fee = _number(raw.get("sizeModFee")) or 0.0
            if raw.get("hasSizeMod") and size_mod_fee:
                line_total += size_mod_fee * qty
        else:
            size_mod_fee = 0.0
            if raw.get("hasSizeMod") and product.size_mods:
                size_mod_fee = round(line_total * size_mod_rate, 2)
                line_total += size_mod_fee
        subtotal += line_total
        total_ngn += (product.price_ngn or 0.0) * qty

        unit_weight = _number(raw.get("unitWeight"))
        if unit_weight is None:
            unit_weight = variant.weight or 0.0
        total_weight += unit_weight * qty

        custom = raw.get("customMods") or raw.get("customSize") or {}
        lines.append((variant.id, qty, dict(
            variant_id=variant.id,
            name=product.name,
            image=(product.images or [None])[0],
            category=product.category_slug,
            quantity=qty,
            currency=currency,
            line_total=line_total,
            color=variant.color or "N/A",
            size=variant.size or "N/A",
            has_size_mod=bool(raw.get("hasSizeMod")),
            size_mod_fee=size_mod_fee,
            custom_size={
                **(custom if isinstance(custom, dict) else {}),
                "unitWeight": unit_weight,
                "totalWeight": round(unit_weight * qty, 3),
            },
        )))
    return lines, subtotal, total_ngn, total_weight


async def _place_order(db: AsyncSession, lines, **fields) -> Order:
    """Decrement stock, take the next serial and insert the order.

    One transaction: a variant that ran out since pricing rolls the whole
    order back. IntegrityError propagates to the caller after rollback.
    """
    try:
        async with timeit("db.create_order"):
            for variant_id, qty, _ in lines:
                res = await db.execute(
                    update(Variant)
                    .where(Variant.id == variant_id, Variant.stock >= qty)
                    .values(stock=Variant.stock - qty)
                )
                if res.rowcount != 1:
                    raise StoreError(
                        "Insufficient stock during transaction for "
                        f"{variant_id}"
                    )

            serial = OrderSerial()
            db.add(serial)
            await db.flush()

            order = Order(
                id=format_order_id(serial.id),
                status=ORDER_PROCESSING,
                items=[OrderItem(**data) for _, _, data in lines],
                **fields,
            )
            db.add(order)
            await db.commit()
    except (StoreError, IntegrityError):
        await db.rollback()
        raise
    return order


async def create_online_order(
    db: AsyncSession, payments: PaymentGateway, mailer: Mailer,
    payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Turn a verified payment into an order.

    Returns {"success", "orderId", "email", "created"}; `created` is False
    when the payment reference already had an order (replay / race).
    """
    items: List[Dict[str, Any]] = payload.get("items") or []
    customer: Dict[str, Any] = payload.get("customer") or {}
    reference = payload.get("paymentReference")
    delivery_fee = _number(payload.get("deliveryFee")) or 0.0
    delivery_option_id = payload.get("deliveryOptionId")
    shipping = payload.get("shipping") or {}

    if not isinstance(items, list) or not items:
        raise StoreError("No items provided")
    if not customer.get("email"):
        raise StoreError("Customer email is required")
    if not reference or not isinstance(reference, str):
        raise StoreError("Missing or invalid paymentReference")

    currency = str(payload.get("currency") or "").upper()
    if currency not in CURRENCIES:
        raise StoreError(f"Unsupported currency: {payload.get('currency')}")

    try:
        tx = await payments.verify_transaction(reference)
    except PaystackError as e:
        raise StoreError(f"Payment verification failed: {e.message}")

    if str(tx.get("currency") or "").upper() != currency:
        raise StoreError(
            f"Currency mismatch: expected {currency}, "
            f"got {tx.get('currency')}"
        )

    via_shipbubble = (
        shipping.get("source") == "shipbubble"
        and bool(shipping.get("shipbubble"))
    )
    if delivery_option_id and not via_shipbubble:
        opt = await db.get(DeliveryOption, delivery_option_id)
        if opt is None:
            raise StoreError("Invalid deliveryOptionId provided")
        if not opt.active:
            raise StoreError("Delivery option is not active")

    existing = await load_order_by_reference(db, reference)
    if existing is not None:
        await _patch_payment(db, existing, tx)
        recipient = recipient_for(existing) or _guest_info(customer)
        await _send_receipt_best_effort(
            db, mailer, existing, recipient, currency, delivery_fee
        )
        return {
            "success": True,
            "orderId": existing.id,
            "email": recipient.get("email") or customer.get("email"),
            "created": False,
        }

    # ---- price lines and check stock
    lines, subtotal, total_ngn, total_weight = await _price_lines(
        db, items, currency
    )

    expected = to_lowest(subtotal + delivery_fee)
    if tx.get("amount") != expected:
        await _record_amount_mismatch(db, reference, tx)
        raise StoreError(
            f"Payment amount mismatch: expected {expected}, "
            f"got {tx.get('amount')}"
        )

    # ---- who is buying
    customer_id = None
    found = None
    if customer.get("id"):
        found = await db.get(Customer, customer["id"])
    if found is not None:
        customer_id = found.id
        guest_info = None
    else:
        guest_info = _guest_info(customer)

    delivery_details: Dict[str, Any] = {
        "aggregatedWeight": round(total_weight, 3),
        "deliveryOptionId": delivery_option_id,
    }
    if via_shipbubble:
        sb = shipping["shipbubble"]
        fee = _number(sb.get("fee"))
        delivery_details["shipbubble"] = {
            "requestToken": sb.get("requestToken"),
            "serviceCode": sb.get("serviceCode"),
            "courierId": sb.get("courierId"),
            "fee": fee if fee is not None else delivery_fee,
            "currency": sb.get("currency") or currency,
            "courierName": sb.get("courierName"),
            "meta": sb.get("meta"),
        }

    created_at = now_ts()
    if payload.get("timestamp"):
        try:
            created_at = datetime.fromisoformat(
                str(payload["timestamp"]).replace("Z", "+00:00")
            ).timestamp()
        except ValueError:
            pass

    try:
        order = await _place_order(
            db, lines,
            currency=currency,
            total_amount=subtotal,
            total_ngn=round(total_ngn),
            payment_method=payload.get("paymentMethod") or "paystack",
            payment_reference=reference,
            payment_provider_id=(
                str(tx["id"]) if tx.get("id") is not None else None
            ),
            payment_verified=True,
            created_at=created_at,
            customer_id=customer_id,
            guest_info=guest_info,
            channel=CHANNEL_ONLINE,
            delivery_option_id=(
                None if via_shipbubble else delivery_option_id
            ),
            delivery_fee=delivery_fee,
            delivery_details=delivery_details,
        )
    except IntegrityError:
        # a concurrent request for the same payment won the race
        winner = await load_order_by_reference(db, reference)
        if winner is None:
            raise
        recipient = recipient_for(winner) or _guest_info(customer)
        return {
            "success": True,
            "orderId": winner.id,
            "email": recipient.get("email"),
            "created": False,
        }

    if found is not None:
        try:
            found.delivery_address = customer.get("deliveryAddress")
            found.billing_address = customer.get("billingAddress")
            found.country = customer.get("country")
            found.state = customer.get("state")
            await db.commit()
        except SQLAlchemyError:
            await db.rollback()
            log.warning("Failed to sync saved addresses for customer %s",
                        customer_id)

    order = await load_order(db, order.id)
    if found is not None:
        recipient = {
            "firstName": found.first_name,
            "lastName": found.last_name,
            "email": found.email,
            "phone": customer.get("phone"),
            "deliveryAddress": customer.get("deliveryAddress"),
            "billingAddress": customer.get("billingAddress"),
        }
    else:
        recipient = guest_info
    await _send_receipt_best_effort(
        db, mailer, order, recipient, currency, delivery_fee
    )
    log.info("order %s created for payment %s", order.id, reference)
    return {
        "success": True,
        "orderId": order.id,
        "email": recipient.get("email"),
        "created": True,
    }


OFFLINE_SIZE_MOD_RATE = 0.05

_SHIPBUBBLE_MARKERS = ("shipbubble", "requestToken", "request_token",
                       "courierId", "courier_id", "serviceCode",
                       "service_code")


def _offline_delivery_details(dd: Any) -> Tuple[Dict[str, Any], bool]:
    """Normalise the till's delivery details; True if Shipbubble booked."""
    if isinstance(dd, str):
        text = dd.strip()
        if text.startswith("{"):
            try:
                dd = json.loads(text)
            except ValueError:
                pass
    if dd is None or dd == "":
        return {}, False
    if not isinstance(dd, dict):
        return {"note": str(dd)}, False

    rate = dd.get("rate") if isinstance(dd.get("rate"), dict) else {}
    quote = dd.get("quote") if isinstance(dd.get("quote"), dict) else {}
    used = (
        str(dd.get("source") or "").lower() == "shipbubble"
        or any(dd.get(k) for k in _SHIPBUBBLE_MARKERS)
        or bool(quote.get("quoteId"))
        or bool(rate.get("courierName") or rate.get("serviceCode"))
    )
    if not used:
        return dict(dd), False

    sb = dict(dd["shipbubble"]) if isinstance(dd.get("shipbubble"), dict) \
        else {}
    picked = {
        "requestToken": (quote.get("quoteId") or sb.get("requestToken")
                         or dd.get("requestToken")
                         or dd.get("request_token")),
        "serviceCode": (quote.get("serviceCode") or sb.get("serviceCode")
                        or rate.get("serviceCode") or dd.get("serviceCode")
                        or dd.get("service_code")),
        "courierId": (sb.get("courierId") or rate.get("courierId")
                      or dd.get("courierId") or dd.get("courier_id")),
        "courierName": (sb.get("courierName") or rate.get("courierName")
                        or dd.get("courierName")),
    }
    for k, v in picked.items():
        if v:
            sb[k] = str(v)
    return {**dd, "source": "Shipbubble", "shipbubble": sb}, True


async def _shipbubble_option(db: AsyncSession) -> Optional[DeliveryOption]:
    result = await db.execute(
        select(DeliveryOption)
        .where(
            DeliveryOption.active.is_(True),
            or_(func.lower(DeliveryOption.provider) == "shipbubble",
                func.lower(DeliveryOption.name).contains("shipbubble")),
        )
        .order_by(DeliveryOption.created_at)
        .limit(1)
    )
    return result.scalars().first()


async def create_offline_order(
    db: AsyncSession, mailer: Mailer, payload: Dict[str, Any],
) -> Dict[str, Any]:
    """Record an in-store sale rung up by an admin.

    Same stock and serial transaction as checkout; no payment gateway. The
    order starts in Processing on the OFFLINE channel.
    """
    items = payload.get("items")
    customer = payload.get("customer") or {}
    payment_method = payload.get("paymentMethod")
    delivery_option_id = payload.get("deliveryOptionId")

    if not isinstance(items, list) or not items:
        raise StoreError("No items provided")
    if not payment_method or not isinstance(payment_method, str):
        raise StoreError("paymentMethod is required")
    currency = str(payload.get("currency") or "").upper()
    if currency not in CURRENCIES:
        raise StoreError("Invalid or missing currency")
    if not isinstance(customer, dict):
        raise StoreError("Guest customer info incomplete")

    found = None
    guest_info = None
    if customer.get("id"):
        found = await db.get(Customer, customer["id"])
        if found is None:
            raise NotFound("Customer not found")
    else:
        if not all(customer.get(k) for k in
                   ("firstName", "lastName", "email", "phone")):
            raise StoreError("Guest customer info incomplete")
        guest_info = _guest_info(customer)
        guest_info["deliveryAddress"] = (
            customer.get("address") or customer.get("deliveryAddress")
        )

    delivery_details, via_shipbubble = _offline_delivery_details(
        payload.get("deliveryDetails")
    )
    option = None
    if delivery_option_id:
        option = await db.get(DeliveryOption, delivery_option_id)
        if option is None or not option.active:
            raise StoreError("Invalid or inactive delivery option")
    elif via_shipbubble:
        # label booking needs the Shipbubble option on the order
        option = await _shipbubble_option(db)

    lines, subtotal, total_ngn, _ = await _price_lines(
        db, items, currency, size_mod_rate=OFFLINE_SIZE_MOD_RATE
    )

    delivery_fee = _number(payload.get("deliveryFee"))
    if delivery_fee is None:
        delivery_fee = (option.base_fee if option is not None else None) \
            or 0.0

    order = await _place_order(
        db, lines,
        currency=currency,
        total_amount=subtotal,
        total_ngn=round(total_ngn),
        payment_method=payment_method,
        created_at=now_ts(),
        customer_id=found.id if found is not None else None,
        guest_info=guest_info,
        channel=CHANNEL_OFFLINE,
        delivery_option_id=option.id if option is not None else None,
        delivery_fee=delivery_fee,
        delivery_details=delivery_details or None,
    )
    db.add(ReceiptEmailStatus(order_id=order.id, attempts=0, sent=False,
                              delivery_fee=delivery_fee))
    await db.commit()

    order = await load_order(db, order.id)
    recipient = recipient_for(order)
    await _send_receipt_best_effort(
        db, mailer, order, recipient, currency, delivery_fee
    )
    log.info("offline order %s recorded (%s)", order.id, payment_method)
    return {"success": True, "orderId": order.id}


# ----------------------------
# Back office
# ----------------------------
async def restore_stock(db: AsyncSession, order: Order) -> bool:
    """Give the order's quantities back to their variants, once.

    Caller commits.
    """
    if order.stock_restored_at is not None:
        return False
    for item in order.items:
        await db.execute(
            update(Variant)
            .where(Variant.id == item.variant_id)
            .values(stock=Variant.stock + item.quantity)
        )
    order.stock_restored_at = now_ts()
    return True


async def apply_status(db: AsyncSession, order: Order, status: str) -> bool:
    """Set the status and restore stock when entering Cancelled.

    Returns True if the status changed. Caller commits.
    """
    if status == order.status:
        return False
    if status == ORDER_CANCELLED:
        if await restore_stock(db, order):
            log.info("order %s cancelled, stock restored", order.id)
    order.status = status
    return True


async def update_order_status(
    db: AsyncSession, mailer: Mailer, order_id: str, status: Any,
) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise StoreError("Invalid status")

    order = await load_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")

    await apply_status(db, order, status)
    await db.commit()

    recipient = recipient_for(order)
    if recipient and recipient.get("email"):
        name = f"{recipient['firstName']} {recipient['lastName']}".strip()
        try:
            await send_status_email(
                mailer, recipient["email"], name, order.id, status
            )
        except MailError as e:
            log.warning("Failed to send status email for order %s: %s",
                        order.id, e)

    return serialize_order(order)


async def get_order(db: AsyncSession, order_id: str) -> Dict[str, Any]:
    order = await load_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    out = serialize_order(order)
    if order.shipment is not None:
        s = order.shipment
        out["shipment"] = {
            "status": s.status,
            "externalOrderId": s.external_order_id,
            "trackingUrl": s.tracking_url,
            "trackingNumber": s.tracking_number,
            "courierName": s.courier_name,
        }
    return out


async def list_orders(db: AsyncSession, limit: int = 200,
                      status: Optional[str] = None) -> List[Dict[str, Any]]:
    stmt = select(Order).order_by(Order.created_at.desc())
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.limit(max(1, min(limit, 500)))
    rows = (await db.execute(stmt)).scalars().all()
    items = []
    for o in rows:
        item = serialize_order(o, with_items=False)
        recipient = recipient_for(o)
        item["email"] = recipient.get("email") if recipient else ""
        item["itemCount"] = sum(i.quantity for i in o.items)
        items.append(item)
    return items


async def delete_customer(db: AsyncSession, customer_id: str) -> None:
    exists = await db.get(Customer, customer_id)
    if exists is None:
        raise NotFound("Customer not found")
    try:
        await db.execute(
            delete(WishlistItem).where(WishlistItem.customer_id == customer_id)
        )
        await db.execute(
            update(Order)
            .where(Order.customer_id == customer_id)
            .values(customer_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.delete(exists)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        raise
