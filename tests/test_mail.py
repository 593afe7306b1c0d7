import smtplib
import time

import pytest

from storefront import mail
from storefront.mail import (
    Mailer, MailError, compute_backoff_seconds, render_status,
    send_receipt_with_retry, send_status_email,
)
from storefront.model.db import ReceiptEmailStatus
from storefront.model.orders import load_order


def test_backoff_doubles_and_caps_at_one_hour():
    assert [compute_backoff_seconds(n) for n in range(1, 9)] == [
        60, 120, 240, 480, 960, 1920, 3600, 3600,
    ]
    assert compute_backoff_seconds(0) == 60
    assert compute_backoff_seconds(-3) == 60


def test_render_status_escapes_html():
    html = render_status("<b>Ada</b>", "ORD-001", "Shipped")
    assert "&lt;b&gt;Ada&lt;/b&gt;" in html
    assert "ORD-001" in html


@pytest.mark.asyncio
async def test_mailer_wraps_smtp_failures(monkeypatch):
    class Refusing:
        def __init__(self, *a, **kw):
            raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(mail.smtplib, "SMTP", Refusing)
    with pytest.raises(MailError):
        await Mailer(host="smtp.test").send("a@b.co", "hi", "<p>hi</p>")


@pytest.mark.asyncio
async def test_mailer_sends_html_message(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"no")

        def send_message(self, msg):
            sent.append(msg)

    monkeypatch.setattr(mail.smtplib, "SMTP", FakeSMTP)
    m = Mailer(host="smtp.test", sender="shop@example.com",
               reply_to="help@example.com")
    await m.send("ada@example.com", "Hello", "<p>Hi</p>")
    assert sent[0]["To"] == "ada@example.com"
    assert sent[0]["Reply-To"] == "help@example.com"

    m.user = "u"
    with pytest.raises(MailError):
        await m.send("ada@example.com", "Hello", "<p>Hi</p>")


@pytest.mark.asyncio
async def test_receipt_failure_is_recorded_and_reraised(
        db, placed_order, mailer):
    order = await load_order(db, placed_order)
    recipient = {"firstName": "Ada", "lastName": "Obi",
                 "email": "ada@example.com"}
    mailer.fail = True
    before = time.time()
    with pytest.raises(MailError):
        await send_receipt_with_retry(db, mailer, order, recipient,
                                      "NGN", 1500)

    st = await db.get(ReceiptEmailStatus, placed_order)
    # one success at checkout, then this failure
    assert st.attempts == 2
    assert st.sent is False
    assert st.last_error == "smtp unavailable"
    assert st.next_retry_at >= before + compute_backoff_seconds(2)


@pytest.mark.asyncio
async def test_bad_receipt_address_counts_as_an_attempt(
        db, placed_order, mailer):
    order = await load_order(db, placed_order)
    before = time.time()
    with pytest.raises(MailError):
        await send_receipt_with_retry(db, mailer, order,
                                      {"firstName": "Ada", "email": "ada@"},
                                      "NGN", 1500)

    st = await db.get(ReceiptEmailStatus, placed_order)
    assert st.attempts == 2
    assert st.sent is False
    assert st.last_error == "[send_receipt] invalid recipient email"
    assert st.next_retry_at >= before + compute_backoff_seconds(2)
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_receipt_renders_lines_and_totals(db, placed_order, mailer):
    assert len(mailer.sent) == 1
    to, subject, html = mailer.sent[0]
    assert to == "ada@example.com"
    assert subject == f"Invoice for order {placed_order}"
    assert "Adire Maxi Dress" in html
    assert "NGN 21,500.00" in html


@pytest.mark.asyncio
async def test_invalid_recipient_is_rejected(mailer):
    with pytest.raises(MailError):
        await send_status_email(mailer, "not-an-email", "Ada", "ORD-1",
                                "Shipped")
    assert mailer.sent == []
