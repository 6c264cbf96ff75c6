"""Transactional e-mail over SMTP."""

from __future__ import annotations

import asyncio
import logging
from email.message import EmailMessage
from html import escape
from typing import Optional, Sequence

import aiosmtplib

from settings import settings

logger = logging.getLogger("escrow.notifications")

Attachment = tuple[str, bytes, str]


def build_message(
    to: str,
    subject: str,
    html_body: str,
    attachments: Optional[Sequence[Attachment]] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("Please view this email in an HTML-capable client.")
    msg.add_alternative(html_body, subtype="html")

    for filename, content, mime_type in attachments or ():
        maintype, _, subtype = mime_type.partition("/")
        msg.add_attachment(
            content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=filename,
        )
    return msg


async def send_email_async(
    to: str,
    subject: str,
    html_body: str,
    attachments: Optional[Sequence[Attachment]] = None,
) -> bool:
    """
    Returns True when sent, or when SMTP is not configured (no-op).
    Raises on SMTP failure; callers decide whether that matters.
    """
    if not settings.SMTP_HOST:
        logger.info("SMTP not configured, skipping email subject=%r", subject)
        return True

    msg = build_message(to, subject, html_body, attachments)
    await aiosmtplib.send(
        msg,
        hostname=settings.SMTP_HOST,
        port=settings.SMTP_PORT,
        username=settings.SMTP_USERNAME or None,
        password=settings.SMTP_PASSWORD or None,
        start_tls=settings.SMTP_USE_TLS,
    )
    logger.info("email sent subject=%r", subject)
    return True


def send_email(
    to: str,
    subject: str,
    html_body: str,
    attachments: Optional[Sequence[Attachment]] = None,
) -> bool:
    # Route handlers and workers here are synchronous and run outside any event loop.
    return asyncio.run(send_email_async(to, subject, html_body, attachments))


def render_email(title: str, paragraphs: Sequence[str], *, action: Optional[tuple[str, str]] = None) -> str:
    """Minimal branded HTML body. Paragraph text is escaped."""
    body = "".join(f"<p>{escape(p)}</p>" for p in paragraphs)
    button = ""
    if action:
        label, url = action
        button = (
            f'<p><a href="{escape(url, quote=True)}" '
            f'style="background:#0F1F3D;color:#fff;padding:10px 18px;border-radius:6px;text-decoration:none">'
            f"{escape(label)}</a></p>"
        )
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:560px;margin:auto\">"
        f"<h2>{escape(title)}</h2>{body}{button}"
        f"<p style=\"color:#888;font-size:12px\">{escape(settings.SMTP_FROM_NAME)}</p>"
        "</div>"
    )
