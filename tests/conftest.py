import json
import os
from urllib.parse import unquote

# module constants are read at import time
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_secret"
os.environ["SHIPBUBBLE_API_KEY"] = "sb_test_key"
os.environ["SHIPBUBBLE_WEBHOOK_SECRET"] = "sb_whsec"
os.environ["RECONCILE_SECRET"] = "reconcile-me"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "pw"
os.environ["EVENT_STORE_BACKEND"] = "sql"
os.environ["AUTO_REFUND_ORPHANS"] = "false"
os.environ["ORDER_ID_PREFIX"] = "ORD"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from storefront.helpers import hmac_sha512_hex  # noqa: E402
from storefront.infra.sql import create_schema, make_async_engine  # noqa: E402
from storefront.mail import Mailer, MailError  # noqa: E402
from storefront.model.db import (  # noqa: E402
    Base, Category, DeliveryOption, Product, Variant,
)
from storefront.model.orders import create_online_order  # noqa: E402
from storefront.paystack import Paystack  # noqa: E402
from storefront.shipbubble import Shipbubble  # noqa: E402

PAYSTACK_SECRET = "sk_test_secret"
PAYSTACK_BASE = "https://api.paystack.test"
SHIPBUBBLE_KEY = "sb_test_key"
SHIPBUBBLE_BASE = "https://api.shipbubble.test/v1"
SHIPBUBBLE_WEBHOOK_SECRET = "sb_whsec"


def sign(secret: str, body: dict | bytes) -> tuple[bytes, str]:
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    return raw, hmac_sha512_hex(secret, raw)


# ----------------------------
# Fake providers
# ----------------------------
class FakePaystackAPI:
    """Serves /transaction/verify and /refund from in-memory dicts."""

    def __init__(self):
        self.transactions = {}
        self.refunds = []
        self.unreachable = set()
        self.refund_error = None
        self.calls = []

    def add(self, reference, amount, currency="NGN", status="success",
            tx_id=None):
        self.transactions[reference] = {
            "id": tx_id or 1000 + len(self.transactions),
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "status": status,
            "paid_at": "2026-01-01T10:00:00.000Z",
        }
        return self.transactions[reference]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if path.startswith("/transaction/verify/"):
            ref = unquote(path.rsplit("/", 1)[1])
            if ref in self.unreachable:
                return httpx.Response(502, text="<html>Bad gateway</html>")
            tx = self.transactions.get(ref)
            if tx is None:
                return httpx.Response(404, json={
                    "status": False,
                    "message": "Transaction reference not found",
                })
            return httpx.Response(200, json={
                "status": True, "message": "Verification successful",
                "data": tx,
            })
        if path == "/refund" and request.method == "POST":
            body = json.loads(request.content)
            if self.refund_error:
                return httpx.Response(400, json={
                    "status": False, "message": self.refund_error,
                })
            self.refunds.append(body)
            return httpx.Response(200, json={
                "status": True, "message": "Refund has been queued",
                "data": {"id": 9000 + len(self.refunds),
                         "transaction": body["transaction"],
                         "status": "pending"},
            })
        return httpx.Response(404, json={"status": False,
                                         "message": "Not found"})


class FakeShipbubbleAPI:

    def __init__(self):
        self.down = False
        self.labels = {}
        self.cancelled = []
        self.calls = []
        self.couriers = [
            {"name": "Fez Delivery", "service_code": "fez"},
            {"name": "GIG Logistics", "service_code": "gig"},
            {"name": "DHL Express", "service_code": "dhl"},
        ]
        self.validated = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        self.calls.append((request.method, path))
        if self.down:
            return httpx.Response(503, json={"status": "error",
                                             "message": "maintenance"})
        if path == "/shipping/labels" and request.method == "POST":
            body = json.loads(request.content)
            n = len(self.labels) + 1
            label = {
                "order_id": f"SB-{n}",
                "tracking_url": f"https://track.test/SB-{n}",
                "tracking_number": f"TRK{n}",
                "status": "pending",
                "request": body,
            }
            self.labels[label["order_id"]] = label
            return httpx.Response(200, json={"status": "success",
                                             "data": label})
        if path.startswith("/shipping/labels/cancel/"):
            self.cancelled.append(unquote(path.rsplit("/", 1)[1]))
            return httpx.Response(200, json={"status": "success",
                                             "data": {}})
        if path.startswith("/shipping/labels/list/"):
            ids = unquote(path.rsplit("/", 1)[1]).split(",")
            results = [
                {"order_id": i, "status": self.labels[i]["status"],
                 "tracking_url": self.labels[i]["tracking_url"],
                 "courier": {"tracking_code": self.labels[i][
                     "tracking_number"]}}
                for i in ids if i in self.labels
            ]
            return httpx.Response(200, json={"status": "success",
                                             "data": {"results": results}})
        if path == "/shipping/address/validate":
            body = json.loads(request.content)
            code = 100 + len(self.validated)
            self.validated[code] = body
            return httpx.Response(200, json={"status": "success", "data": {
                "address_code": code, "country_code": "NG",
                "state": "Lagos", "city": "Ikeja",
            }})
        if path == "/shipping/labels/boxes":
            return httpx.Response(200, json={"status": "success", "data": [
                {"name": "small", "length": 10, "width": 10, "height": 5,
                 "max_weight": 2},
                {"name": "large", "length": 40, "width": 30, "height": 20,
                 "max_weight": 20},
            ]})
        if path == "/shipping/couriers":
            return httpx.Response(200, json={"status": "success",
                                             "data": self.couriers})
        if path.startswith("/shipping/fetch_rates"):
            return httpx.Response(200, json={"status": "success", "data": {
                "request_token": "req-tok-1",
                "couriers": [
                    {"courier_id": "fez", "courier_name": "Fez Delivery",
                     "service_code": "fez", "total": 2500,
                     "currency": "NGN", "delivery_eta": "Within 2 days"},
                ],
            }})
        return httpx.Response(404, json={"status": "failed",
                                         "message": "Not found"})


class RecordingMailer(Mailer):

    def __init__(self):
        super().__init__(host="smtp.test", port=25)
        self.sent = []
        self.fail = False

    async def send(self, to, subject, html):
        if self.fail:
            raise MailError("smtp unavailable")
        self.sent.append((to, subject, html))


# ----------------------------
# Fixtures
# ----------------------------
@pytest_asyncio.fixture
async def engine(tmp_path):
    database = make_async_engine(f"sqlite:///{tmp_path / 'store.db'}")
    await create_schema(database.engine, Base.metadata)
    yield database.engine, database.SessionAsync
    await database.engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    _, SessionAsync = engine
    async with SessionAsync() as session:
        yield session


@pytest.fixture
def paystack_api():
    return FakePaystackAPI()


@pytest.fixture
def shipbubble_api():
    return FakeShipbubbleAPI()


@pytest_asyncio.fixture
async def payments(paystack_api):
    transport = httpx.MockTransport(paystack_api.handler)
    async with httpx.AsyncClient(transport=transport) as http:
        yield Paystack(http, secret_key=PAYSTACK_SECRET,
                       base_url=PAYSTACK_BASE)


@pytest_asyncio.fixture
async def shipping(shipbubble_api):
    transport = httpx.MockTransport(shipbubble_api.handler)
    async with httpx.AsyncClient(transport=transport) as http:
        yield Shipbubble(http, api_key=SHIPBUBBLE_KEY,
                         base_url=SHIPBUBBLE_BASE, backoff_base=0)


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest_asyncio.fixture
async def store(db):
    """A small catalog: one product with two variants, two options."""
    db.add(Category(slug="dresses", name="Dresses"))
    product = Product(
        name="Adire Maxi Dress", category_slug="dresses",
        images=["https://img.test/adire.jpg"],
        price_ngn=10_000, price_usd=20, status="Published",
        variants=[
            Variant(color="Red", size="M", stock=5, weight=0.5),
            Variant(color="Blue", size="L", stock=1, weight=0.5),
        ],
    )
    db.add(product)
    pickup = DeliveryOption(name="Pickup", base_fee=0, base_currency="NGN")
    retired = DeliveryOption(name="Old courier", active=False)
    db.add_all([pickup, retired])
    await db.commit()
    return {
        "product_id": product.id,
        "red_m": product.variants[0].id,
        "blue_l": product.variants[1].id,
        "pickup": pickup.id,
        "retired": retired.id,
    }


def checkout_payload(store, reference, qty=2, currency="NGN",
                     delivery_fee=1500, **extra):
    payload = {
        "items": [{
            "productId": store["product_id"],
            "color": "Red",
            "size": "M",
            "quantity": qty,
        }],
        "customer": {
            "firstName": "Ada",
            "lastName": "Obi",
            "email": "ada@example.com",
            "phone": "+2348000000000",
            "deliveryAddress": "1 Marina, Lagos",
        },
        "paymentReference": reference,
        "currency": currency,
        "deliveryFee": delivery_fee,
        "deliveryOptionId": store["pickup"],
    }
    payload.update(extra)
    return payload


SHIPBUBBLE_SHIPPING = {
    "source": "shipbubble",
    "shipbubble": {
        "requestToken": "req-tok-1",
        "serviceCode": "fez",
        "courierId": "fez",
        "courierName": "Fez Delivery",
        "fee": 1500,
    },
}


@pytest_asyncio.fixture
async def placed_order(db, store, payments, paystack_api, mailer):
    """A paid ORD-001 for 2 x Red/M, shipped through Shipbubble."""
    paystack_api.add("ref-placed", 2_150_000)
    result = await create_online_order(
        db, payments, mailer,
        checkout_payload(store, "ref-placed", deliveryOptionId=None,
                         shipping=SHIPBUBBLE_SHIPPING),
    )
    return result["orderId"]


@pytest_asyncio.fixture
async def client(engine, payments, shipping, mailer):
    from storefront.server import (
        app, get_db, get_mailer, get_payments, get_shipping,
    )
    _, SessionAsync = engine

    async def _db():
        async with SessionAsync() as session:
            yield session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_payments] = lambda: payments
    app.dependency_overrides[get_shipping] = lambda: shipping
    app.dependency_overrides[get_mailer] = lambda: mailer
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def login(client):
    res = await client.post("/admin/login",
                            data={"username": "admin", "password": "pw"})
    assert res.status_code == 303
