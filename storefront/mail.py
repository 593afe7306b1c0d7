from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from email.message import EmailMessage
from email.utils import parseaddr
from typing import Any, Dict, Optional

from jinja2 import Environment, DictLoader, select_autoescape
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import is_valid_email, now_ts, to_iso
from .infra.timings import timeit
from .model.db import Order, ReceiptEmailStatus

log = logging.getLogger(__name__)

SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "25"))
SMTP_USER = os.environ.get("SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD", "")
SMTP_STARTTLS = os.environ.get("SMTP_STARTTLS", "0") == "1"
SMTP_TIMEOUT = float(os.environ.get("SMTP_TIMEOUT", "10"))
MAIL_FROM = os.environ.get("MAIL_FROM", "shipping@localhost")
MAIL_REPLY_TO = os.environ.get("MAIL_REPLY_TO", "")
STORE_NAME = os.environ.get("STORE_NAME", "Storefront")
STORE_URL = os.environ.get("STORE_URL", "http://localhost:8000")

BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 3600
MAX_ERROR_LEN = 1000


class MailError(Exception):
    pass


def compute_backoff_seconds(attempts: int) -> int:
    """60, 120, 240, ... capped at one hour."""
    return min(
        BACKOFF_BASE_SECONDS * 2 ** (max(1, attempts) - 1),
        BACKOFF_MAX_SECONDS,
    )


# ----------------------------
# Templates
# ----------------------------
TEMPLATES = {
    "receipt.html": """\
<h2>{{ store }}: invoice for order {{ order.id }}</h2>
<p>Hi {{ recipient.firstName }} {{ recipient.lastName }},</p>
<p>Thank you for your order placed on {{ placed_at }}.</p>
<table>
  <tr><th>Item</th><th>Variant</th><th>Qty</th><th>Total</th></tr>
  {% for item in order.items %}
  <tr>
    <td>{{ item.name }}</td>
    <td>{{ item.color }} / {{ item.size }}</td>
    <td>{{ item.quantity }}</td>
    <td>{{ money(item.line_total) }}</td>
  </tr>
  {% endfor %}
</table>
<p>Subtotal: {{ money(order.total_amount) }}</p>
<p>Delivery: {{ money(delivery_fee) }}</p>
<p><strong>Total: {{ money(order.total_amount + delivery_fee) }}</strong></p>
{% if recipient.deliveryAddress %}
<p>Delivering to: {{ recipient.deliveryAddress }}</p>
{% endif %}
""",
    "status.html": """\
<h2>Order {{ order_id }}: {{ status }}</h2>
<p>Hi {{ name }},</p>
<p>Your order <strong>{{ order_id }}</strong> has been
<strong>{{ status }}</strong>.</p>
<p><a href="{{ store_url }}/account">View your orders</a></p>
""",
}

env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(["html"]),
)


def render_receipt(order: Order, recipient: Dict[str, Any], currency: str,
                   delivery_fee: float) -> str:
    def money(v) -> str:
        return f"{currency} {float(v or 0):,.2f}"

    return env.get_template("receipt.html").render(
        store=STORE_NAME,
        order=order,
        recipient=recipient,
        placed_at=to_iso(order.created_at),
        delivery_fee=float(delivery_fee or 0),
        money=money,
    )


def render_status(name: str, order_id: str, status: str) -> str:
    return env.get_template("status.html").render(
        name=name, order_id=order_id, status=status, store_url=STORE_URL,
    )


# ----------------------------
# Transport
# ----------------------------
class Mailer:
    """SMTP delivery; smtplib blocks, so every send runs in a thread."""

    def __init__(self, host: str = SMTP_HOST, port: int = SMTP_PORT,
                 user: str = SMTP_USER, password: str = SMTP_PASSWORD,
                 starttls: bool = SMTP_STARTTLS,
                 sender: str = MAIL_FROM, reply_to: str = MAIL_REPLY_TO):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.starttls = starttls
        self.sender = sender
        self.reply_to = reply_to

    def _build(self, to: str, subject: str, html: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        if self.reply_to:
            msg["Reply-To"] = self.reply_to
        msg.set_content("This message requires an HTML capable client.")
        msg.add_alternative(html, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=SMTP_TIMEOUT) as s:
            if self.starttls:
                s.starttls()
            if self.user:
                s.login(self.user, self.password)
            s.send_message(msg)

    async def send(self, to: str, subject: str, html: str) -> None:
        msg = self._build(to, subject, html)
        async with timeit("mail.send"):
            try:
                await asyncio.to_thread(self._send_sync, msg)
            except (smtplib.SMTPException, OSError) as e:
                raise MailError(str(e)) from e


def _checked_address(to: Optional[str], what: str) -> str:
    addr = (to or "").strip()
    if not is_valid_email(parseaddr(addr)[1]):
        raise MailError(f"[{what}] invalid recipient email")
    return addr


# ----------------------------
# Receipts & status notifications
# ----------------------------
async def _save_receipt_status(
    db: AsyncSession, order_id: str, *, sent: bool, delivery_fee: float,
    error: Optional[str] = None,
) -> ReceiptEmailStatus:
    st = await db.get(ReceiptEmailStatus, order_id)
    if st is None:
        st = ReceiptEmailStatus(order_id=order_id, attempts=0)
        db.add(st)
    st.attempts = (st.attempts or 0) + 1
    st.sent = sent
    st.delivery_fee = delivery_fee
    if sent:
        st.last_error = None
        st.next_retry_at = None
    else:
        st.last_error = (error or "")[:MAX_ERROR_LEN]
        st.next_retry_at = now_ts() + compute_backoff_seconds(st.attempts)
    await db.commit()
    return st


async def send_receipt_with_retry(
    db: AsyncSession, mailer: Mailer, order: Order,
    recipient: Dict[str, Any], currency: str, delivery_fee: float,
) -> None:
    """Send the invoice; record the outcome so the retry sweep can
    pick failed sends up again. Re-raises the send error."""
    html = render_receipt(order, recipient, currency, delivery_fee)
    try:
        # a bad address is a failed attempt too
        to = _checked_address(recipient.get("email"), "send_receipt")
        await mailer.send(to, f"Invoice for order {order.id}", html)
    except MailError as e:
        st = await _save_receipt_status(
            db, order.id, sent=False, delivery_fee=delivery_fee,
            error=str(e),
        )
        log.warning(
            "Receipt email send failed for order %s, retry at %s: %s",
            order.id, to_iso(st.next_retry_at), e,
        )
        raise
    await _save_receipt_status(
        db, order.id, sent=True, delivery_fee=delivery_fee
    )


async def send_status_email(mailer: Mailer, to: str, name: str,
                            order_id: str, status: str) -> None:
    addr = _checked_address(to, "send_status_email")
    await mailer.send(
        addr,
        f"Your order {order_id} Status: {status}",
        render_status(name, order_id, status),
    )
