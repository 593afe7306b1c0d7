"""
Shipment synchronisation with Shipbubble.

Local Shipment rows mirror the provider's label; the order status and the
`delivery_details.shipbubble` snapshot follow whatever the provider
reports, through webhooks or an admin status poll.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, StoreError
from ..helpers import merge_json, now_ts, to_iso
from ..shipbubble import (
    Shipbubble, ShipbubbleError, choose_best_rate, map_order_status,
    map_shipment_status, normalize_rates, pick_box_for_weight,
    validate_webhook_signature,
)
from .db import (
    PROVIDER_SHIPBUBBLE, SHIP_CANCELLED, SHIP_DELIVERED, SHIP_FAILED,
    SHIP_IN_TRANSIT, SHIP_LABEL_CREATED, Order, Shipment,
)
from .orders import apply_status, load_order
from .webhookevent import WebhookEventStore

log = logging.getLogger(__name__)

HAS_LABEL = (SHIP_LABEL_CREATED, SHIP_IN_TRANSIT, SHIP_DELIVERED)
POLL_TIMEOUT = 5.0

CATEGORY_ID = int(os.environ.get("SHIPBUBBLE_CATEGORY_ID", "90097994"))
ORIGIN = {
    "name": os.environ.get("SHIPBUBBLE_ORIGIN_NAME", ""),
    "email": os.environ.get("SHIPBUBBLE_ORIGIN_EMAIL", ""),
    "phone": os.environ.get("SHIPBUBBLE_ORIGIN_PHONE", ""),
    "street": os.environ.get("SHIPBUBBLE_ORIGIN_STREET", ""),
    "city": os.environ.get("SHIPBUBBLE_ORIGIN_CITY", ""),
    "state": os.environ.get("SHIPBUBBLE_ORIGIN_STATE", ""),
    "country": os.environ.get("SHIPBUBBLE_ORIGIN_COUNTRY", ""),
}

# courier policy by destination, matched case-insensitively on name
LAGOS_COURIERS = ("Stallion King", "Dellyman", "Fez Delivery")
NIGERIA_COURIERS = ("Fez Delivery", "Red star", "GIG Logistics")


def _dict(v: Any) -> Dict[str, Any]:
    return v if isinstance(v, dict) else {}


async def _shipment_by_external_id(db: AsyncSession,
                                   external_id: str) -> Optional[Shipment]:
    return (await db.execute(
        select(Shipment).where(
            Shipment.provider == PROVIDER_SHIPBUBBLE,
            Shipment.external_order_id == external_id,
        )
    )).scalars().first()


# ----------------------------
# Webhook
# ----------------------------
async def handle_shipping_webhook(
    db: AsyncSession, events: WebhookEventStore, raw: bytes,
    signature: Optional[str], secret: Optional[str] = None,
) -> bool:
    """Apply one Shipbubble event. Returns True when something changed.

    Never raises for bad input; the provider is always acknowledged.
    """
    if not validate_webhook_signature(raw, signature, secret):
        log.warning("shipbubble webhook signature verification failed")
        return False

    try:
        payload = json.loads(raw)
    except ValueError:
        log.error("shipbubble webhook: invalid JSON")
        return False
    if not isinstance(payload, dict):
        log.error("shipbubble webhook: invalid JSON")
        return False

    event = payload.get("event") or "unknown"
    external_id = str(payload.get("order_id") or "")
    sb_status = str(payload.get("status") or "").lower()
    if not external_id:
        log.warning("shipbubble webhook: missing order_id")
        return False

    # redeliveries are applied again; the update is idempotent
    event_hash = hashlib.sha256(raw).hexdigest()
    if not await events.record(PROVIDER_SHIPBUBBLE, event_hash, payload):
        log.info("shipbubble event %s seen before", event_hash[:12])

    shipment = await _shipment_by_external_id(db, external_id)
    if shipment is None:
        # label created outside our flow
        log.warning("shipbubble webhook: no shipment for %s", external_id)
        return False

    courier = _dict(payload.get("courier"))
    shipment.status = map_shipment_status(sb_status)
    if courier.get("name"):
        shipment.courier_name = courier["name"]
    if payload.get("tracking_url"):
        shipment.tracking_url = payload["tracking_url"]
    tracking_code = courier.get("tracking_code") or payload.get("tracking_code")
    if tracking_code:
        shipment.tracking_number = str(tracking_code)
    if sb_status == "cancelled":
        shipment.cancelled_at = now_ts()
        shipment.cancel_reason = (
            payload.get("cancel_reason")
            or payload.get("message")
            or "Cancelled via webhook"
        )
        shipment.raw_cancel = payload
    else:
        shipment.raw_response = payload

    # load_order refreshes the shipment relationship from the database
    await db.flush()
    order = await load_order(db, shipment.order_id)
    if order is None:
        await db.commit()
        return True

    dd = _dict(order.delivery_details)
    if shipment.status == SHIP_CANCELLED:
        label = None
    else:
        label = {
            "order_id": external_id,
            "tracking_url": shipment.tracking_url,
            "tracking_number": shipment.tracking_number,
            "status": sb_status,
            "updated_at": to_iso(now_ts()),
        }
    order.delivery_details = merge_json(dd, {
        "shipbubble": {
            **_dict(dd.get("shipbubble")),
            "label": label,
            "last_event": event,
        },
    })
    await apply_status(db, order, map_order_status(shipment.status))
    await db.commit()
    log.info("shipbubble %s: order %s -> %s (%s)",
             event, order.id, order.status, shipment.status)
    return True


# ----------------------------
# Labels
# ----------------------------
def label_inputs(dd: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Booking inputs saved at checkout, wherever the quote put them."""
    quote = _dict(dd.get("quote"))
    sb = _dict(dd.get("shipbubble"))
    raw = _dict(dd.get("raw"))

    def first(*vals):
        for v in vals:
            if v is not None and v != "":
                return str(v)
        return None

    return {
        "request_token": first(quote.get("quoteId"), sb.get("requestToken"),
                               dd.get("request_token"),
                               raw.get("request_token")),
        "service_code": first(quote.get("serviceCode"),
                              sb.get("serviceCode"), dd.get("service_code"),
                              raw.get("service_code")),
        "courier_id": first(sb.get("courierId"), dd.get("courier_id"),
                            raw.get("courier_id")),
        "courier_name": first(sb.get("courierName"), dd.get("courierName"),
                              raw.get("courier_name")),
    }


async def create_label(db: AsyncSession, shipping: Shipbubble,
                       order_id: str) -> Dict[str, Any]:
    order = await load_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    if order.shipment is not None and order.shipment.status in HAS_LABEL:
        raise StoreError("Shipment label already exists for this order")

    dd = _dict(order.delivery_details)
    inputs = label_inputs(dd)
    if not (inputs["request_token"] and inputs["service_code"]
            and inputs["courier_id"]):
        raise StoreError(
            "Missing requestToken/serviceCode/courierId on deliveryDetails. "
            "Re-quote rates."
        )

    try:
        resp = await shipping.create_label(
            request_token=inputs["request_token"],
            service_code=inputs["service_code"],
            courier_id=inputs["courier_id"],
        )
    except ShipbubbleError as e:
        raise StoreError(e.message or "Failed to create label")

    data = _dict(resp.get("data"))
    tracking_number = data.get("tracking_number") or data.get("trackingNo")

    shipment = order.shipment
    if shipment is None:
        shipment = Shipment(order_id=order.id)
        db.add(shipment)
    shipment.provider = PROVIDER_SHIPBUBBLE
    shipment.status = SHIP_LABEL_CREATED
    shipment.external_order_id = str(data.get("order_id") or "") or None
    shipment.request_token = inputs["request_token"]
    shipment.service_code = inputs["service_code"]
    shipment.courier_id = inputs["courier_id"]
    if inputs["courier_name"]:
        shipment.courier_name = inputs["courier_name"]
    if data.get("tracking_url"):
        shipment.tracking_url = str(data["tracking_url"])
    if tracking_number:
        shipment.tracking_number = str(tracking_number)
    shipment.raw_response = resp
    shipment.cancelled_at = None
    shipment.cancel_reason = None

    order.delivery_details = merge_json(dd, {
        "shipbubble": {
            **_dict(dd.get("shipbubble")),
            "label": {
                "order_id": shipment.external_order_id,
                "tracking_url": shipment.tracking_url,
                "tracking_number": shipment.tracking_number,
                "created_at": to_iso(now_ts()),
            },
        },
        "raw": {**_dict(dd.get("raw")), "last_label_response": resp},
    })
    await db.commit()
    log.info("label %s created for order %s",
             shipment.external_order_id, order.id)

    return {
        "success": True,
        "shipmentId": shipment.id,
        "status": shipment.status,
        "shipbubbleOrderId": shipment.external_order_id,
        "trackingUrl": shipment.tracking_url,
        "trackingNumber": shipment.tracking_number,
    }


async def cancel_label(db: AsyncSession, shipping: Shipbubble,
                       order_id: str) -> Dict[str, Any]:
    order = await load_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    shipment = order.shipment
    if shipment is None or not shipment.external_order_id:
        raise StoreError("No Shipbubble label exists for this order")

    try:
        await shipping.cancel_label(shipment.external_order_id)
    except ShipbubbleError as e:
        raise StoreError(e.message or "Failed to cancel label")

    now = now_ts()
    shipment.status = SHIP_CANCELLED
    shipment.cancelled_at = now
    shipment.raw_cancel = {"at": to_iso(now)}
    shipment.tracking_url = None
    shipment.tracking_number = None

    dd = _dict(order.delivery_details)
    order.delivery_details = merge_json(dd, {
        "shipbubble": {
            **_dict(dd.get("shipbubble")),
            "label": None,
            "canceled_at": to_iso(now),
        },
    })
    await db.commit()
    return {"success": True}


def _local_status(shipment: Shipment, **extra) -> Dict[str, Any]:
    out = {
        "hasLabel": shipment.status != SHIP_CANCELLED,
        "status": shipment.status,
        "trackingUrl": shipment.tracking_url,
    }
    out.update(extra)
    return out


async def shipment_status(db: AsyncSession, shipping: Shipbubble,
                          order_id: str) -> Dict[str, Any]:
    """Poll the provider once for the order's label.

    Polling must not fail the dashboard: when the provider is unreachable
    the local record is returned with `degraded: true`.
    """
    order = await load_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    shipment = order.shipment
    if shipment is None or not shipment.external_order_id:
        return {"hasLabel": False, "status": None, "trackingUrl": None}

    try:
        remote_list = await shipping.list_shipments_by_ids(
            [shipment.external_order_id], timeout=POLL_TIMEOUT, retry=1,
        )
    except ShipbubbleError as e:
        log.warning("shipbubble status poll failed for %s: %s",
                    order.id, e.message)
        return _local_status(shipment, degraded=True,
                             reason="shipbubble_unreachable")

    remote = next(
        (r for r in remote_list
         if str(r.get("order_id")) == str(shipment.external_order_id)),
        None,
    )
    if remote is None:
        return _local_status(shipment)

    mapped = map_shipment_status(remote.get("status"))
    tracking_url = remote.get("tracking_url")
    if mapped != shipment.status or tracking_url != shipment.tracking_url:
        shipment.status = mapped
        shipment.tracking_url = tracking_url
        tracking_code = _dict(remote.get("courier")).get("tracking_code")
        if tracking_code:
            shipment.tracking_number = str(tracking_code)
        await db.commit()

    return {
        "hasLabel": mapped not in (SHIP_CANCELLED, SHIP_FAILED),
        "status": mapped,
        "trackingUrl": tracking_url,
    }


# ----------------------------
# Rates
# ----------------------------
def _join_address(street: str, city: str, state: str, country: str) -> str:
    parts = []
    if street.strip():
        parts.append(street.strip())
    c, s = city.strip(), state.strip()
    if c and s and c.lower() != s.lower():
        parts += [c, s]
    elif c or s:
        parts.append(c or s)
    country = country.strip()
    if country.upper() == "NG":
        country = "Nigeria"
    if country:
        parts.append(country)
    return ", ".join(parts)


async def _origin_address_code(shipping: Shipbubble) -> int:
    if not all(v.strip() for v in ORIGIN.values()):
        raise StoreError(
            "Shipbubble origin env is incomplete. "
            "Check SHIPBUBBLE_ORIGIN_* variables.", 500,
        )
    validated = await shipping.validate_address(
        name=ORIGIN["name"], email=ORIGIN["email"], phone=ORIGIN["phone"],
        address=_join_address(ORIGIN["street"], ORIGIN["city"],
                              ORIGIN["state"], ORIGIN["country"]),
    )
    return int(validated["address_code"])


def _package_items(body: Dict[str, Any], total_weight: float,
                   total_value: float) -> List[Dict[str, Any]]:
    items = body.get("items")
    if isinstance(items, list) and items:
        return [{
            "name": str(it.get("name") or "Item"),
            "description": str(it.get("description") or "Cart item"),
            "unit_weight": float(it.get("unitWeightKG")
                                 or it.get("unit_weight") or 0.5),
            "unit_amount": float(it.get("unitAmount")
                                 or it.get("unit_amount") or 0),
            "quantity": int(it.get("quantity") or 1),
        } for it in items]
    return [{
        "name": "Cart items",
        "description": "Consolidated package",
        "unit_weight": max(total_weight, 0.1),
        "unit_amount": max(total_value, 0.0),
        "quantity": 1,
    }]


async def quote_rates(shipping: Shipbubble,
                      body: Dict[str, Any]) -> Dict[str, Any]:
    dest = _dict(body.get("destination"))
    try:
        total_weight = float(body.get("total_weight_kg") or 0)
        total_value = float(body.get("total_value") or 0)
        pickup_days = int(body.get("pickup_days_from_now", 1))
    except (TypeError, ValueError):
        raise StoreError("Invalid rates request")
    pickup_days = min(max(pickup_days, 0), 7)

    if not all(dest.get(k) for k in ("name", "email", "phone", "address")):
        raise StoreError(
            "destination { name, email, phone, address } are required "
            "for rates lookup"
        )
    if total_weight <= 0:
        raise StoreError("total_weight_kg must be > 0")

    try:
        sender_code = await _origin_address_code(shipping)
        validated = await shipping.validate_address(
            name=dest["name"], email=dest["email"], phone=dest["phone"],
            address=_join_address(dest["address"], dest.get("city") or "",
                                  dest.get("state") or "",
                                  dest.get("country") or ""),
        )
        try:
            boxes = await shipping.fetch_boxes()
        except ShipbubbleError:
            boxes = []
        box = pick_box_for_weight(total_weight, boxes)

        fetch_body: Dict[str, Any] = {
            "sender_address_code": sender_code,
            "reciever_address_code": validated["address_code"],
            "pickup_date": (
                date.today() + timedelta(days=pickup_days)
            ).isoformat(),
            "category_id": CATEGORY_ID,
            "package_items": _package_items(body, total_weight, total_value),
            "delivery_instructions": "Handle with care",
        }
        if box:
            fetch_body["package_dimension"] = {
                "length": float(box["length"]),
                "width": float(box["width"]),
                "height": float(box["height"]),
            }

        country = str(validated.get("country_code")
                      or validated.get("country") or "").upper()
        region = " ".join(str(validated.get(k) or "")
                          for k in ("state", "city")).lower()
        wanted: tuple = ()
        if country == "NG":
            wanted = LAGOS_COURIERS if "lagos" in region else NIGERIA_COURIERS
        codes: List[str] = []
        if wanted:
            couriers = await shipping.fetch_couriers()
            codes = [
                c["service_code"] for c in couriers
                if c.get("service_code") and any(
                    n.lower() in str(c.get("name") or "").lower()
                    for n in wanted
                )
            ]
        raw = await shipping.fetch_rates(fetch_body, codes or None)
    except ShipbubbleError as e:
        log.error("shipbubble rates failed: %s (%s)", e.message,
                  e.http_status)
        raise StoreError(e.message or "Shipbubble rates failed", 502,
                         details=_dict(e.payload).get("errors"))

    token = raw.get("request_token")
    normalized = normalize_rates(raw)
    rates = [{
        "id": r["id"],
        "courierName": r["courierName"],
        "courierId": r["courierId"],
        "serviceCode": r["serviceCode"],
        "fee": r["total"],
        "currency": r["currency"] or "NGN",
        "eta": r["deliveryEtaText"] or r["pickupEtaText"] or "",
        "requestToken": token,
    } for r in normalized]
    cheapest = choose_best_rate(normalized, "cheapest")
    return {
        "rates": rates,
        "cheapest": cheapest["id"] if cheapest else None,
        "requestToken": token,
        "boxUsed": {
            k: box.get(k)
            for k in ("name", "length", "width", "height", "max_weight")
        } if box else None,
    }
