# app/jobs/escalation.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from db import get_conn
from app.ledger import disputes, jobs
from services import metrics, notifications
from services.email import render_email
from settings import parse_hours, settings

logger = logging.getLogger("escrow.jobs")

REMINDER_SUBJECTS = {
    1: "Payment Reminder: Invoice Awaiting Payment - {name}",
    2: "Second Reminder: Payment Still Pending - {name}",
    3: "Final Notice: Invoice Expiring Soon - {name}",
}
REMINDER_INTROS = {
    1: "Just a friendly reminder that the following invoice is still awaiting your payment.",
    2: "We noticed the invoice below is still unpaid. The seller is waiting for your payment.",
    3: "This is a final reminder. If this invoice is not paid soon, it may expire and the seller will need to reissue it.",
}
REMINDER_BUTTONS = {1: "Pay Now", 2: "Pay Invoice", 3: "Pay Before It Expires"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hours_since(ts: datetime, now: datetime) -> float:
    return (now - ts).total_seconds() / 3600.0


def due_levels(elapsed_hours: float, thresholds: list[int]) -> list[int]:
    """Levels are 1-based positions in the threshold list."""
    return [i for i, h in enumerate(thresholds, start=1) if elapsed_hours >= h]


def _claim_and_send(
    *,
    job: str,
    subject_key: str,
    level: int,
    claim: Callable[..., bool],
    release: Callable[..., None],
    send: Callable[[], bool],
) -> bool:
    """
    Insert-before-send. Only the process whose insert lands sends; a failed
    send deletes the row so a later run retries the same level.
    """
    try:
        with get_conn() as conn:
            claimed = claim(conn, invoice_number=subject_key, level=level)
    except Exception:
        logger.exception("%s claim error invoice=%s level=%s", job, subject_key, level)
        metrics.increment_job_notification(job, "claim_error")
        return False

    if not claimed:
        metrics.increment_job_notification(job, "skipped")
        return False

    if send():
        logger.info("%s sent invoice=%s level=%s", job, subject_key, level)
        metrics.increment_job_notification(job, "sent")
        return True

    try:
        with get_conn() as conn:
            release(conn, invoice_number=subject_key, level=level)
    except Exception:
        logger.exception("%s release failed invoice=%s level=%s", job, subject_key, level)
    logger.warning("%s send failed, claim released invoice=%s level=%s", job, subject_key, level)
    metrics.increment_job_notification(job, "failed")
    return False


# ==========================================================
# Payment reminders
# ==========================================================

def _reminder_sender(row: dict[str, Any], level: int) -> Callable[[], bool]:
    number = row["invoice_number"]
    name = row.get("invoice_name") or number
    link = f"{settings.FRONTEND_URL.rstrip('/')}/invoice/{number}"
    capped = min(level, max(REMINDER_SUBJECTS))

    def send() -> bool:
        return notifications.send_email_safe(
            row.get("buyer_email"),
            REMINDER_SUBJECTS[capped].format(name=name),
            render_email(
                REMINDER_SUBJECTS[capped].format(name=name),
                [
                    REMINDER_INTROS[capped],
                    f"Invoice: {name}",
                    f"Reference: {number}",
                    f"Amount due: {row['amount']} {row.get('currency') or settings.CURRENCY}",
                ],
                action=(REMINDER_BUTTONS[capped], link),
            ),
        )

    return send


def run_payment_reminders(now: Optional[datetime] = None) -> int:
    """Remind buyers of unpaid invoices, counted from their latest payment attempt."""
    now = now or _utcnow()
    thresholds = parse_hours(settings.REMINDER_LEVEL_HOURS)

    with get_conn() as conn:
        rows = jobs.list_reminder_candidates(conn)

    sent = 0
    for row in rows:
        if not row.get("buyer_email"):
            continue
        for level in due_levels(hours_since(row["attempt_at"], now), thresholds):
            if _claim_and_send(
                job="reminder",
                subject_key=row["invoice_number"],
                level=level,
                claim=jobs.claim_reminder,
                release=jobs.release_reminder,
                send=_reminder_sender(row, level),
            ):
                sent += 1

    logger.info("reminders checked=%s sent=%s", len(rows), sent)
    return sent


# ==========================================================
# Dispute escalation
# ==========================================================

def _escalation_sender(row: dict[str, Any], level: int, elapsed: float) -> Callable[[], bool]:
    number = row["invoice_number"]
    days = int(elapsed // 24)
    final = level >= 2
    subject = (
        f"[URGENT] Dispute Unresolved for {days} Days - Invoice {number}"
        if final
        else f"[Admin] Dispute Open for 72+ Hours - Invoice {number}"
    )
    link = f"{settings.FRONTEND_URL.rstrip('/')}/admin/dispute/{row['admin_token']}"

    def send() -> bool:
        return notifications.send_email_safe(
            settings.ADMIN_EMAIL,
            subject,
            render_email(
                subject,
                [
                    f"A dispute on invoice {number} ({row.get('invoice_name') or ''}) has been open for "
                    f"{int(elapsed)} hours without a decision.",
                    f"Opened by: {row['opened_by']}",
                    f"Reason: {row['reason']}",
                    f"Amount in escrow: {row['amount']} {row.get('currency') or settings.CURRENCY}",
                    "The funds remain frozen until an admin resolves this dispute."
                    if final
                    else "Please review the conversation and issue a decision.",
                ],
                action=("Review dispute", link),
            ),
        )

    return send


def run_dispute_escalations(now: Optional[datetime] = None) -> int:
    now = now or _utcnow()
    if not settings.ADMIN_EMAIL:
        logger.warning("dispute escalation skipped: ADMIN_EMAIL is not configured")
        return 0
    thresholds = parse_hours(settings.ESCALATION_LEVEL_HOURS)

    with get_conn() as conn:
        rows = disputes.list_open_disputes(conn)

    sent = 0
    for row in rows:
        elapsed = hours_since(row["created_at"], now)
        for level in due_levels(elapsed, thresholds):
            if _claim_and_send(
                job="escalation",
                subject_key=row["invoice_number"],
                level=level,
                claim=jobs.claim_escalation,
                release=jobs.release_escalation,
                send=_escalation_sender(row, level, elapsed),
            ):
                sent += 1

    logger.info("escalations checked=%s sent=%s", len(rows), sent)
    return sent


def run_once(now: Optional[datetime] = None) -> dict[str, int]:
    now = now or _utcnow()
    out = {"reminders": 0, "escalations": 0}
    try:
        out["reminders"] = run_payment_reminders(now)
    except Exception:
        logger.exception("reminder job failed")
    try:
        out["escalations"] = run_dispute_escalations(now)
    except Exception:
        logger.exception("escalation job failed")
    return out
