from __future__ import annotations

import uuid

import services.email as mailer
import services.notifications as notifications
from settings import settings


def test_build_message_attaches_receipt():
    msg = mailer.build_message(
        "buyer@example.com",
        "Payment Confirmed",
        "<p>hi</p>",
        [("receipt.pdf", b"%PDF-1.4 test", "application/pdf")],
    )
    attachments = list(msg.iter_attachments())
    assert msg["To"] == "buyer@example.com"
    assert [a.get_filename() for a in attachments] == ["receipt.pdf"]
    assert attachments[0].get_content_type() == "application/pdf"


def test_render_email_escapes_text():
    html = mailer.render_email("Invoice <1>", ["a & b"], action=("Release", "https://x.test/?a=1&b=2"))
    assert "Invoice &lt;1&gt;" in html
    assert "a &amp; b" in html
    assert 'href="https://x.test/?a=1&amp;b=2"' in html


def test_unconfigured_smtp_is_a_noop():
    assert notifications.send_email_safe("buyer@example.com", "s", "<p>x</p>") is True


def test_send_goes_through_smtp(monkeypatch):
    sent = []

    async def fake_send(msg, **kwargs):
        sent.append((msg["Subject"], kwargs["hostname"]))

    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(mailer.aiosmtplib, "send", fake_send)

    assert notifications.send_email_safe("buyer@example.com", "Funds Released", "<p>x</p>") is True
    assert sent == [("Funds Released", "smtp.test")]


def test_smtp_failure_is_swallowed(monkeypatch):
    async def refused(msg, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(settings, "SMTP_HOST", "smtp.test")
    monkeypatch.setattr(mailer.aiosmtplib, "send", refused)

    assert notifications.send_email_safe("buyer@example.com", "s", "<p>x</p>") is False
    assert notifications.send_email_safe(None, "s", "<p>x</p>") is False


def test_notify_user_never_raises(monkeypatch):
    def no_db():
        raise RuntimeError("db down")

    monkeypatch.setattr(notifications, "get_conn", no_db)
    assert notifications.notify_user(None, "invoice_paid", "t", "b") is False
    assert notifications.notify_user(uuid.uuid4(), "invoice_paid", "t", "b") is False
