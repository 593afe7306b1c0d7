from __future__ import annotations
import logging
import os
import sys
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Header, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .errors import StoreError, Unauthorized
from .helpers import ct_equal
from .infra.logs import setup_logging
from .infra.sql import create_schema, make_async_engine
from .infra.timings import snapshot, timeit
from .mail import Mailer
from .paystack import PaymentGateway, Paystack
from .shipbubble import Shipbubble
from .model.db import Base
from .model import catalog, orders, reconcile, receipts, shipments
from .model.webhookevent import (
    WebhookEventStore, new_store, BACKEND as EVENTS_BACKEND
)

log = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    sys.exit("NEED DATABASE_URL! e.g. sqlite:///./storefront.db")

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
RECONCILE_SECRET = os.environ.get("RECONCILE_SECRET", "")


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    # DB-GATE: one gate slot per request
    async with gated():
        async with SessionAsync() as session:
            yield session


app = FastAPI(
    title="Storefront",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


def get_payments() -> PaymentGateway:
    return Paystack(app.state.http)


def get_shipping() -> Shipbubble:
    return Shipbubble(app.state.http)


def get_mailer() -> Mailer:
    return app.state.mailer


async def get_event_store(
    db: AsyncSession = Depends(get_db),
) -> WebhookEventStore:
    if EVENTS_BACKEND == "redis":
        return new_store(r=app.state.redis)
    return new_store(db=db)


@app.exception_handler(StoreError)
async def _store_error(request: Request, exc: StoreError):
    body = {"error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return ORJSONResponse(body, status_code=exc.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging()
    log.info("storefront starting (webhook event store: %s)",
             EVENTS_BACKEND)


@app.on_event("startup")
async def _db_init():
    await create_schema(engine, Base.metadata)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=15.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=32
        ),
    )
    app.state.mailer = Mailer()


@app.on_event("startup")
async def _redis_start():
    if EVENTS_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise Unauthorized("Unauthorized")


def require_reconcile_secret(
    x_reconcile_secret: Optional[str] = Header(None),
) -> None:
    if not RECONCILE_SECRET:
        raise StoreError("Reconcile secret not configured", 500)
    if not x_reconcile_secret or not ct_equal(x_reconcile_secret,
                                              RECONCILE_SECRET):
        raise Unauthorized("Unauthorized")


# ----------------------------
# Catalog (public)
# ----------------------------
@app.get("/api/categories")
async def api_categories(active: bool = True,
                         db: AsyncSession = Depends(get_db)):
    return await catalog.list_categories(db, active_only=active)


@app.get("/api/products")
async def api_products(category: Optional[str] = None, limit: int = 100,
                       db: AsyncSession = Depends(get_db)):
    items = await catalog.list_products(db, category=category, limit=limit)
    return {"items": items, "limit": limit}


@app.get("/api/products/{product_id}")
async def api_product(product_id: str, db: AsyncSession = Depends(get_db)):
    return await catalog.get_product(db, product_id)


@app.get("/api/delivery-options")
async def api_delivery_options(db: AsyncSession = Depends(get_db)):
    return await catalog.list_delivery_options(db)


# ----------------------------
# Checkout
# ----------------------------
@app.post("/api/orders/online")
async def api_create_online_order(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    payments: PaymentGateway = Depends(get_payments),
    mailer: Mailer = Depends(get_mailer),
):
    result = await orders.create_online_order(db, payments, mailer, payload)
    created = result.pop("created")
    return ORJSONResponse(result, status_code=201 if created else 200)


@app.post("/api/shipping/shipbubble/rates")
async def api_shipbubble_rates(
    payload: dict,
    shipping: Shipbubble = Depends(get_shipping),
):
    return await shipments.quote_rates(shipping, payload)


# ----------------------------
# Webhooks
# ----------------------------
@app.post("/api/paystack/webhook")
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentGateway = Depends(get_payments),
    events: WebhookEventStore = Depends(get_event_store),
):
    raw = await request.body()
    async with timeit("webhook.paystack"):
        return await reconcile.handle_payment_webhook(
            db, payments, events, raw,
            request.headers.get("x-paystack-signature"),
        )


@app.post("/api/webhooks/shipbubble")
async def shipbubble_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    events: WebhookEventStore = Depends(get_event_store),
):
    raw = await request.body()
    try:
        async with timeit("webhook.shipbubble"):
            await shipments.handle_shipping_webhook(
                db, events, raw, request.headers.get("x-ship-signature"),
            )
    except Exception:
        # acknowledge anyway; the provider retries non-2xx forever
        log.exception("shipbubble webhook handler error")
        await db.rollback()
    return {"received": True}


# ----------------------------
# Reconciliation jobs (shared secret)
# ----------------------------
@app.post("/api/paystack/reconcile",
          dependencies=[Depends(require_reconcile_secret)])
async def paystack_reconcile(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentGateway = Depends(get_payments),
):
    try:
        body = await request.json()
    except ValueError:
        body = None
    reference = body.get("reference") if isinstance(body, dict) else None
    return await reconcile.reconcile_reference(db, payments, reference)


@app.post("/api/paystack/orphan-sweep",
          dependencies=[Depends(require_reconcile_secret)])
async def paystack_orphan_sweep(
    db: AsyncSession = Depends(get_db),
    payments: PaymentGateway = Depends(get_payments),
):
    async with timeit("job.orphan_sweep"):
        summary = await reconcile.sweep_orphans(db, payments)
    log.info("orphan sweep: %s", {k: v for k, v in summary.items()
                                   if k != "errors"})
    return {"summary": summary}


@app.post("/api/orders/retry-email",
          dependencies=[Depends(require_reconcile_secret)])
async def retry_receipt_emails(
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    async with timeit("job.retry_email"):
        return await receipts.retry_pending_receipts(db, mailer)


# ----------------------------
# Admin login
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/api/admin/orders"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local redirects
        dest = next if next.startswith("/") and not next.startswith("//") \
            else "/api/admin/orders"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    log.warning("admin login failed for %r", username.strip())
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


# ----------------------------
# Admin: orders & customers
# ----------------------------
admin = [Depends(require_admin)]


@app.get("/api/admin/orders", dependencies=admin)
async def api_admin_orders(limit: int = 200, status: Optional[str] = None,
                           db: AsyncSession = Depends(get_db)):
    items = await orders.list_orders(db, limit=limit, status=status)
    return {"items": items, "limit": limit}


@app.get("/api/admin/orders/{order_id}", dependencies=admin)
async def api_admin_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await orders.get_order(db, order_id)


@app.patch("/api/orders/{order_id}", dependencies=admin)
async def api_update_order_status(
    order_id: str,
    payload: dict,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return await orders.update_order_status(
        db, mailer, order_id, payload.get("status")
    )


@app.post("/api/offline-sales", dependencies=admin)
async def api_create_offline_order(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    result = await orders.create_offline_order(db, mailer, payload)
    return ORJSONResponse(result, status_code=201)


@app.delete("/api/admin/customers/{customer_id}", dependencies=admin)
async def api_delete_customer(customer_id: str,
                              db: AsyncSession = Depends(get_db)):
    await orders.delete_customer(db, customer_id)
    return {"message": "Customer deleted"}


# ----------------------------
# Admin: catalog
# ----------------------------
@app.post("/api/admin/categories", dependencies=admin)
async def api_create_category(payload: dict,
                              db: AsyncSession = Depends(get_db)):
    return ORJSONResponse(await catalog.create_category(db, payload),
                          status_code=201)


@app.patch("/api/admin/categories/{slug}", dependencies=admin)
async def api_update_category(slug: str, payload: dict,
                              db: AsyncSession = Depends(get_db)):
    return await catalog.update_category(db, slug, payload)


@app.delete("/api/admin/categories/{slug}", dependencies=admin)
async def api_delete_category(slug: str, db: AsyncSession = Depends(get_db)):
    await catalog.delete_category(db, slug)
    return {"ok": True}


@app.post("/api/admin/products", dependencies=admin)
async def api_create_product(payload: dict,
                             db: AsyncSession = Depends(get_db)):
    return ORJSONResponse(await catalog.create_product(db, payload),
                          status_code=201)


# ----------------------------
# Admin: orphan payments
# ----------------------------
@app.get("/api/admin/orphans", dependencies=admin)
async def api_admin_orphans(db: AsyncSession = Depends(get_db)):
    return {"data": await reconcile.list_orphans(db)}


@app.get("/api/admin/orphans/{reference}/verify", dependencies=admin)
async def api_admin_verify_orphan(
    reference: str,
    payments: PaymentGateway = Depends(get_payments),
):
    return {"data": await reconcile.verify_reference(payments, reference)}


@app.post("/api/admin/orphans/{reference}/resolve", dependencies=admin)
async def api_admin_resolve_orphan(reference: str,
                                   db: AsyncSession = Depends(get_db)):
    await reconcile.resolve_orphan(db, reference)
    return {"success": True}


@app.post("/api/admin/orphans/manual-seed", dependencies=admin)
async def api_admin_seed_orphan(
    payload: dict,
    db: AsyncSession = Depends(get_db),
    payments: PaymentGateway = Depends(get_payments),
):
    orphan = await reconcile.seed_orphan(
        db, payments, payload.get("reference")
    )
    return {"success": True, "orphan": orphan}


# ----------------------------
# Admin: shipping labels
# ----------------------------
@app.post("/api/admin/orders/{order_id}/shipbubble/create-label",
          dependencies=admin)
async def api_create_label(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    shipping: Shipbubble = Depends(get_shipping),
):
    return await shipments.create_label(db, shipping, order_id)


@app.post("/api/admin/orders/{order_id}/shipbubble/cancel-label",
          dependencies=admin)
async def api_cancel_label(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    shipping: Shipbubble = Depends(get_shipping),
):
    return await shipments.cancel_label(db, shipping, order_id)


@app.get("/api/admin/orders/{order_id}/shipbubble/status",
         dependencies=admin)
async def api_shipment_status(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    shipping: Shipbubble = Depends(get_shipping),
):
    return await shipments.shipment_status(db, shipping, order_id)


@app.get("/api/admin/timings", dependencies=admin)
async def api_admin_timings():
    return {"items": snapshot()}
