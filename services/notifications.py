from __future__ import annotations

import logging
from typing import Any, Optional, Sequence
from uuid import UUID

from psycopg2.extras import Json

from db import get_conn
from app.escrow.errors import NotificationFailure
from services import email as mailer
from services.redaction import redact_text

logger = logging.getLogger("escrow.notifications")


def notify_user(
    user_id: Optional[UUID],
    type: str,
    title: str,
    body: str,
    data: Optional[dict[str, Any]] = None,
) -> bool:
    """
    In-app notification. Never raises: a lost notification must not fail
    the operation that triggered it.
    """
    if not user_id:
        return False
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO app.notifications (user_id, type, title, body, data)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user_id, type, title, body, Json(data or {})),
                )
        return True
    except Exception:
        logger.exception("notify_user failed user_id=%s type=%s", user_id, type)
        return False


def _deliver(to: str, subject: str, html_body: str, attachments) -> None:
    try:
        mailer.send_email(to, subject, html_body, attachments)
    except Exception as exc:
        raise NotificationFailure(str(exc)) from exc


def send_email_safe(
    to: Optional[str],
    subject: str,
    html_body: str,
    attachments: Optional[Sequence[mailer.Attachment]] = None,
) -> bool:
    if not to:
        logger.info("email skipped (no recipient) subject=%r", subject)
        return False
    try:
        _deliver(to, subject, html_body, attachments)
        return True
    except NotificationFailure as exc:
        logger.warning("email failed to=%s subject=%r err=%s", redact_text(to), subject, exc)
        return False
