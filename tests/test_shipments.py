import pytest
from sqlalchemy import select

from storefront.errors import StoreError
from storefront.model import shipments
from storefront.model.db import (
    SHIP_CANCELLED, SHIP_IN_TRANSIT, SHIP_LABEL_CREATED, Shipment, Variant,
)
from storefront.model.orders import load_order
from storefront.model.shipments import (
    cancel_label, create_label, handle_shipping_webhook, label_inputs,
    quote_rates, shipment_status,
)
from storefront.model.webhookevent import new_store

from conftest import SHIPBUBBLE_WEBHOOK_SECRET, sign


async def stock_of(db, variant_id):
    return (await db.execute(
        select(Variant.stock).where(Variant.id == variant_id)
    )).scalar_one()


async def deliver(db, body):
    raw, sig = sign(SHIPBUBBLE_WEBHOOK_SECRET, body)
    return await handle_shipping_webhook(db, new_store(db=db), raw, sig)


@pytest.fixture
def origin(monkeypatch):
    for k, v in {"name": "Adire House", "email": "ops@adire.test",
                 "phone": "+2348011111111", "street": "4 Allen Ave",
                 "city": "Ikeja", "state": "Lagos",
                 "country": "NG"}.items():
        monkeypatch.setitem(shipments.ORIGIN, k, v)


# ----------------------------
# Labels
# ----------------------------
def test_label_inputs_fallbacks():
    assert label_inputs({
        "quote": {"quoteId": "q-1"},
        "shipbubble": {"serviceCode": "gig", "courierId": "c-9"},
        "raw": {"courier_name": "GIG"},
    }) == {"request_token": "q-1", "service_code": "gig",
           "courier_id": "c-9", "courier_name": "GIG"}
    assert label_inputs({"request_token": "", "raw": {
        "request_token": "r-1"}})["request_token"] == "r-1"
    assert label_inputs({}) == dict.fromkeys(
        ("request_token", "service_code", "courier_id", "courier_name"))


@pytest.mark.asyncio
async def test_create_label(db, placed_order, shipping, shipbubble_api):
    out = await create_label(db, shipping, placed_order)
    assert out["success"] is True
    assert out["status"] == SHIP_LABEL_CREATED
    assert out["shipbubbleOrderId"] == "SB-1"
    assert out["trackingUrl"] == "https://track.test/SB-1"
    assert out["trackingNumber"] == "TRK1"
    assert shipbubble_api.labels["SB-1"]["request"]["request_token"] == \
        "req-tok-1"

    order = await load_order(db, placed_order)
    assert order.shipment.courier_name == "Fez Delivery"
    label = order.delivery_details["shipbubble"]["label"]
    assert label["order_id"] == "SB-1"
    assert "last_label_response" in order.delivery_details["raw"]

    with pytest.raises(StoreError) as exc:
        await create_label(db, shipping, placed_order)
    assert exc.value.message == "Shipment label already exists for this order"
    assert len(shipbubble_api.labels) == 1


@pytest.mark.asyncio
async def test_create_label_needs_quote_inputs(db, store, payments,
                                               paystack_api, mailer,
                                               shipping):
    from storefront.model.orders import create_online_order
    from conftest import checkout_payload

    paystack_api.add("ref-1", 2_150_000)
    result = await create_online_order(
        db, payments, mailer, checkout_payload(store, "ref-1"),
    )
    with pytest.raises(StoreError) as exc:
        await create_label(db, shipping, result["orderId"])
    assert exc.value.message.startswith("Missing requestToken")


@pytest.mark.asyncio
async def test_create_label_provider_error(db, placed_order, shipping,
                                           shipbubble_api):
    shipbubble_api.down = True
    with pytest.raises(StoreError) as exc:
        await create_label(db, shipping, placed_order)
    assert exc.value.message == "maintenance"
    assert (await load_order(db, placed_order)).shipment is None


@pytest.mark.asyncio
async def test_cancel_label(db, placed_order, shipping, shipbubble_api):
    with pytest.raises(StoreError):
        await cancel_label(db, shipping, placed_order)

    await create_label(db, shipping, placed_order)
    assert await cancel_label(db, shipping, placed_order) == \
        {"success": True}
    assert shipbubble_api.cancelled == ["SB-1"]

    order = await load_order(db, placed_order)
    assert order.shipment.status == SHIP_CANCELLED
    assert order.shipment.tracking_url is None
    assert order.delivery_details["shipbubble"]["label"] is None
    assert "canceled_at" in order.delivery_details["shipbubble"]

    # a cancelled label can be re-booked
    again = await create_label(db, shipping, placed_order)
    assert again["shipbubbleOrderId"] == "SB-2"


# ----------------------------
# Status poll
# ----------------------------
@pytest.mark.asyncio
async def test_status_without_label(db, placed_order, shipping):
    assert await shipment_status(db, shipping, placed_order) == \
        {"hasLabel": False, "status": None, "trackingUrl": None}


@pytest.mark.asyncio
async def test_status_follows_provider(db, placed_order, shipping,
                                       shipbubble_api):
    await create_label(db, shipping, placed_order)
    out = await shipment_status(db, shipping, placed_order)
    assert out == {"hasLabel": True, "status": SHIP_LABEL_CREATED,
                   "trackingUrl": "https://track.test/SB-1"}

    shipbubble_api.labels["SB-1"]["status"] = "in_transit"
    shipbubble_api.labels["SB-1"]["tracking_url"] = "https://track.test/x"
    out = await shipment_status(db, shipping, placed_order)
    assert out["status"] == SHIP_IN_TRANSIT
    assert out["trackingUrl"] == "https://track.test/x"
    row = (await db.execute(
        select(Shipment.status, Shipment.tracking_url)
    )).one()
    assert tuple(row) == (SHIP_IN_TRANSIT, "https://track.test/x")


@pytest.mark.asyncio
async def test_status_is_degraded_when_provider_is_down(
        db, placed_order, shipping, shipbubble_api):
    await create_label(db, shipping, placed_order)
    shipbubble_api.down = True
    out = await shipment_status(db, shipping, placed_order)
    assert out["degraded"] is True
    assert out["reason"] == "shipbubble_unreachable"
    assert out["status"] == SHIP_LABEL_CREATED
    assert out["hasLabel"] is True


# ----------------------------
# Webhook
# ----------------------------
@pytest.mark.asyncio
async def test_in_transit_event_ships_order(db, placed_order, shipping):
    await create_label(db, shipping, placed_order)
    changed = await deliver(db, {
        "event": "shipment.status.changed", "order_id": "SB-1",
        "status": "in_transit",
        "courier": {"name": "Fez", "tracking_code": "FZ-77"},
    })
    assert changed is True

    order = await load_order(db, placed_order)
    assert order.status == "Shipped"
    assert order.shipment.status == SHIP_IN_TRANSIT
    assert order.shipment.tracking_number == "FZ-77"
    sb = order.delivery_details["shipbubble"]
    assert sb["last_event"] == "shipment.status.changed"
    assert sb["label"]["status"] == "in_transit"


@pytest.mark.asyncio
async def test_cancelled_event_restores_stock(db, store, placed_order,
                                              shipping):
    await create_label(db, shipping, placed_order)
    assert await stock_of(db, store["red_m"]) == 3
    body = {"event": "shipment.cancelled", "order_id": "SB-1",
            "status": "cancelled", "cancel_reason": "customer request"}
    assert await deliver(db, body) is True

    order = await load_order(db, placed_order)
    assert order.status == "Cancelled"
    assert order.shipment.status == SHIP_CANCELLED
    assert order.shipment.cancel_reason == "customer request"
    assert order.delivery_details["shipbubble"]["label"] is None
    assert await stock_of(db, store["red_m"]) == 5

    # redelivery changes nothing further
    assert await deliver(db, body) is True
    assert await stock_of(db, store["red_m"]) == 5


@pytest.mark.asyncio
async def test_webhook_rejects_bad_input(db, placed_order, shipping):
    await create_label(db, shipping, placed_order)
    body = {"event": "x", "order_id": "SB-1", "status": "completed"}
    raw, _ = sign(SHIPBUBBLE_WEBHOOK_SECRET, body)
    assert not await handle_shipping_webhook(db, new_store(db=db), raw,
                                             "bad")
    assert not await deliver(db, {"event": "x", "status": "completed"})
    assert not await deliver(db, {"event": "x", "order_id": "SB-404",
                                  "status": "completed"})
    assert (await load_order(db, placed_order)).status == "Processing"


# ----------------------------
# Rates
# ----------------------------
DESTINATION = {"name": "Ada Obi", "email": "ada@example.com",
               "phone": "+2348000000000", "address": "1 Marina",
               "city": "Lagos", "state": "Lagos", "country": "NG"}


@pytest.mark.asyncio
async def test_quote_rates(origin, shipping, shipbubble_api):
    out = await quote_rates(shipping, {
        "destination": DESTINATION, "total_weight_kg": 1.5,
        "total_value": 20000,
    })
    assert out["requestToken"] == "req-tok-1"
    assert out["cheapest"] == "fez:fez"
    assert out["boxUsed"]["name"] == "small"
    [rate] = out["rates"]
    assert rate["courierName"] == "Fez Delivery"
    assert rate["fee"] == 2500.0
    assert rate["requestToken"] == "req-tok-1"

    # Lagos destinations only ask for the Lagos couriers
    [rates_call] = [p for m, p in shipbubble_api.calls
                    if p.startswith("/shipping/fetch_rates")]
    assert rates_call == "/shipping/fetch_rates/fez"


@pytest.mark.asyncio
async def test_quote_rates_validation(origin, shipping):
    with pytest.raises(StoreError) as exc:
        await quote_rates(shipping, {"destination": {"name": "Ada"},
                                     "total_weight_kg": 1})
    assert "destination" in exc.value.message

    with pytest.raises(StoreError) as exc:
        await quote_rates(shipping, {"destination": DESTINATION,
                                     "total_weight_kg": 0})
    assert exc.value.message == "total_weight_kg must be > 0"


@pytest.mark.asyncio
async def test_quote_rates_needs_origin(shipping):
    with pytest.raises(StoreError) as exc:
        await quote_rates(shipping, {"destination": DESTINATION,
                                     "total_weight_kg": 1})
    assert exc.value.status_code == 500


@pytest.mark.asyncio
async def test_quote_rates_provider_error(origin, shipping, shipbubble_api):
    shipbubble_api.down = True
    with pytest.raises(StoreError) as exc:
        await quote_rates(shipping, {"destination": DESTINATION,
                                     "total_weight_kg": 1})
    assert exc.value.status_code == 502
