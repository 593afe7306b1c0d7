import uuid
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Text,
    JSON,
    ForeignKey,
    UniqueConstraint,
    Index,
)

from ..helpers import now_ts


Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


# Order.status
ORDER_PROCESSING = "Processing"
ORDER_SHIPPED = "Shipped"
ORDER_DELIVERED = "Delivered"
ORDER_CANCELLED = "Cancelled"
ORDER_STATUSES = (
    ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED
)

# Shipment.status
SHIP_REQUESTED = "REQUESTED"
SHIP_LABEL_CREATED = "LABEL_CREATED"
SHIP_IN_TRANSIT = "IN_TRANSIT"
SHIP_DELIVERED = "DELIVERED"
SHIP_CANCELLED = "CANCELLED"
SHIP_FAILED = "FAILED"

PROVIDER_SHIPBUBBLE = "SHIPBUBBLE"

CURRENCIES = ("NGN", "USD", "EUR", "GBP")

CHANNEL_ONLINE = "ONLINE"
CHANNEL_OFFLINE = "OFFLINE"


# ----------------------------
# ORM models
# ----------------------------
class Customer(Base):
    __tablename__ = "customers"
    id = Column(String, primary_key=True, default=new_id)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False, default="")
    delivery_address = Column(Text, nullable=True)
    billing_address = Column(Text, nullable=True)
    country = Column(String, nullable=True)
    state = Column(String, nullable=True)
    registered_at = Column(Float, nullable=False, default=now_ts)


class Category(Base):
    __tablename__ = "categories"
    slug = Column(String, primary_key=True)
    name = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    banner_image = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts,
                        onupdate=now_ts)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    images = Column(JSON, nullable=False, default=list)
    category_slug = Column(
        String, ForeignKey("categories.slug", ondelete="RESTRICT",
                           onupdate="CASCADE"),
        nullable=False, index=True,
    )
    # major units per currency
    price_ngn = Column(Float, nullable=True)
    price_usd = Column(Float, nullable=True)
    price_eur = Column(Float, nullable=True)
    price_gbp = Column(Float, nullable=True)
    size_mods = Column(Boolean, nullable=False, default=False)
    # Draft | Published | Archived
    status = Column(String, nullable=False, default="Draft")
    created_at = Column(Float, nullable=False, default=now_ts)

    variants = relationship(
        "Variant", back_populates="product", lazy="selectin",
        cascade="all, delete-orphan",
    )

    def price_in(self, currency: str) -> float:
        return getattr(self, f"price_{currency.lower()}", None) or 0.0


class Variant(Base):
    __tablename__ = "variants"
    __table_args__ = (
        UniqueConstraint("product_id", "color", "size"),
    )
    id = Column(String, primary_key=True, default=new_id)
    product_id = Column(
        String, ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    color = Column(String, nullable=False, default="")
    size = Column(String, nullable=False, default="")
    stock = Column(Integer, nullable=False, default=0)
    weight = Column(Float, nullable=True)  # kg
    created_at = Column(Float, nullable=False, default=now_ts)

    product = relationship("Product", back_populates="variants",
                           lazy="selectin")


class DeliveryOption(Base):
    __tablename__ = "delivery_options"
    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    # FIXED | EXTERNAL
    pricing_mode = Column(String, nullable=False, default="FIXED")
    base_fee = Column(Float, nullable=True)
    base_currency = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class OrderSerial(Base):
    __tablename__ = "order_serials"
    id = Column(Integer, primary_key=True, autoincrement=True)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )
    id = Column(String, primary_key=True)
    # Processing | Shipped | Delivered | Cancelled
    status = Column(String, nullable=False, default=ORDER_PROCESSING)
    currency = Column(String, nullable=False)
    total_amount = Column(Float, nullable=False)  # major units, ex delivery
    total_ngn = Column(Integer, nullable=False, default=0)
    payment_method = Column(String, nullable=False)
    payment_reference = Column(String, nullable=True, unique=True)
    payment_provider_id = Column(String, nullable=True)
    payment_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=now_ts, index=True)

    customer_id = Column(
        String, ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
    )
    guest_info = Column(JSON, nullable=True)
    channel = Column(String, nullable=False, default=CHANNEL_ONLINE)
    delivery_option_id = Column(
        String, ForeignKey("delivery_options.id", ondelete="SET NULL"),
        nullable=True,
    )
    delivery_fee = Column(Float, nullable=True)
    delivery_details = Column(JSON, nullable=True)
    # set once variant stock has been given back for a cancellation
    stock_restored_at = Column(Float, nullable=True)

    items = relationship(
        "OrderItem", back_populates="order", lazy="selectin",
        cascade="all, delete-orphan",
    )
    customer = relationship("Customer", lazy="selectin")
    shipment = relationship("Shipment", back_populates="order",
                            lazy="selectin", uselist=False)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    variant_id = Column(
        String, ForeignKey("variants.id", ondelete="RESTRICT"),
        nullable=False,
    )
    name = Column(String, nullable=False)
    image = Column(String, nullable=True)
    category = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    line_total = Column(Float, nullable=False)
    color = Column(String, nullable=False)
    size = Column(String, nullable=False)
    has_size_mod = Column(Boolean, nullable=False, default=False)
    size_mod_fee = Column(Float, nullable=False, default=0.0)
    custom_size = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="items")


class Shipment(Base):
    __tablename__ = "shipments"
    __table_args__ = (
        UniqueConstraint("provider", "external_order_id"),
        Index("ix_shipments_status_created", "status", "created_at"),
    )
    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    provider = Column(String, nullable=False, default=PROVIDER_SHIPBUBBLE)
    # REQUESTED | LABEL_CREATED | IN_TRANSIT | DELIVERED | CANCELLED | FAILED
    status = Column(String, nullable=False, default=SHIP_REQUESTED)
    external_order_id = Column(String, nullable=True)
    request_token = Column(String, nullable=True)
    service_code = Column(String, nullable=True)
    courier_name = Column(String, nullable=True)
    courier_id = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    raw_response = Column(JSON, nullable=True)
    raw_cancel = Column(JSON, nullable=True)
    cancelled_at = Column(Float, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts,
                        onupdate=now_ts)

    order = relationship("Order", back_populates="shipment")


class OrphanPayment(Base):
    __tablename__ = "orphan_payments"
    id = Column(String, primary_key=True, default=new_id)
    reference = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)  # lowest denomination
    currency = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    first_seen_at = Column(Float, nullable=False, default=now_ts)
    reconciled = Column(Boolean, nullable=False, default=False)
    reconciled_at = Column(Float, nullable=True)
    resolution_note = Column(Text, nullable=True)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_provider_created", "provider", "created_at"),
    )
    id = Column(String, primary_key=True, default=new_id)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False, unique=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class ReceiptEmailStatus(Base):
    __tablename__ = "receipt_email_status"
    order_id = Column(
        String, ForeignKey("orders.id", ondelete="CASCADE"),
        primary_key=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(Float, nullable=True)
    sent = Column(Boolean, nullable=False, default=False)
    delivery_fee = Column(Float, nullable=True)
    updated_at = Column(Float, nullable=False, default=now_ts,
                        onupdate=now_ts)

    order = relationship("Order", lazy="selectin")


class WishlistItem(Base):
    __tablename__ = "wishlist_items"
    __table_args__ = (
        UniqueConstraint("customer_id", "product_id"),
    )
    id = Column(String, primary_key=True, default=new_id)
    customer_id = Column(
        String, ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id = Column(
        String, ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
    )
    added_at = Column(Float, nullable=False, default=now_ts)
