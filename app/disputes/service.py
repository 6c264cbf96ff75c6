# app/disputes/service.py
from __future__ import annotations

import logging
import math
import secrets
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from db import get_conn
from app.escrow.errors import AlreadyProcessed, NotAuthorized, PreconditionFailed
from app.escrow.state_machine import DisputeStatus, InvoiceStatus, assert_transition
from app.ledger import credentials, disputes, invoices, payments
from app.settlement import engine
from services import metrics, notifications
from services.email import render_email
from settings import settings

logger = logging.getLogger("escrow.disputes")

OPENERS = ("buyer", "seller")
DECISIONS = {
    "seller": DisputeStatus.RESOLVED_SELLER,
    "buyer": DisputeStatus.RESOLVED_BUYER,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _admin_link(admin_token: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/admin/dispute/{admin_token}"


def _system_message(conn, invoice_id, body: str) -> None:
    try:
        payments.insert_chat_message(conn, invoice_id=invoice_id, sender_type="system", body=body)
    except Exception:
        logger.exception("could not post system chat message invoice_id=%s", invoice_id)
        raise


def seller_wait_hours_left(delivered_at: Optional[datetime], now: datetime) -> int:
    """Whole hours until the seller may dispute; 0 when the window has passed."""
    if delivered_at is None:
        return settings.DISPUTE_SELLER_WAIT_HOURS
    elapsed = (now - delivered_at).total_seconds() / 3600.0
    if elapsed >= settings.DISPUTE_SELLER_WAIT_HOURS:
        return 0
    return max(1, math.ceil(settings.DISPUTE_SELLER_WAIT_HOURS - elapsed))


# ==========================================================
# Opening
# ==========================================================

def open_dispute(
    *,
    invoice_number: str,
    opened_by: str,
    reason: str,
    chat_token: Optional[str] = None,
    user_id: Optional[UUID] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    if opened_by not in OPENERS:
        raise PreconditionFailed("Dispute must be opened by either 'seller' or 'buyer'.")
    reason = (reason or "").strip()
    if not reason:
        raise PreconditionFailed("A reason for the dispute is required.")

    now = now or _utcnow()

    with get_conn() as conn:
        invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
        if not invoice:
            raise NotAuthorized()

        if invoice["status"] not in (InvoiceStatus.PAID.value, InvoiceStatus.DELIVERED.value):
            raise PreconditionFailed(
                "A dispute can only be opened after a payment has been made.",
                status_code=403,
            )

        if opened_by == "seller":
            if user_id is None or str(user_id) != str(invoice["seller_id"]):
                raise NotAuthorized()
            if invoice["status"] != InvoiceStatus.DELIVERED.value:
                raise PreconditionFailed(
                    "You can only open a dispute after you have marked the invoice as delivered.",
                    status_code=403,
                )
            hours_left = seller_wait_hours_left(invoice.get("delivered_at"), now)
            if hours_left > 0:
                raise PreconditionFailed(
                    f"You can open a dispute {hours_left} hour(s) from now. "
                    "This gives the buyer fair time to confirm delivery.",
                    status_code=403,
                    extra={"hours_left": hours_left},
                )
        else:
            if not chat_token or not invoices.guest_has_chat_token(
                conn, invoice_number=invoice_number, chat_token=chat_token
            ):
                raise NotAuthorized("Invalid token. Access denied.")

        existing = disputes.get_dispute_for_invoice(conn, invoice_id=invoice["id"])
        if existing:
            raise _already_disputed(existing)

        admin_token = secrets.token_hex(32)
        dispute = disputes.insert_dispute(
            conn,
            invoice_id=invoice["id"],
            invoice_number=invoice_number,
            opened_by=opened_by,
            reason=reason,
            admin_token=admin_token,
        )
        if not dispute:
            # lost the race to a concurrent opener
            raise _already_disputed(disputes.get_dispute_for_invoice(conn, invoice_id=invoice["id"]))

        _system_message(
            conn,
            invoice["id"],
            f'A dispute has been opened by the {opened_by}. Reason: "{reason}". '
            "An admin has been notified and will review this conversation.",
        )
        seller = invoices.get_user(conn, user_id=invoice["seller_id"])
        guest = invoices.get_guest(conn, invoice_number=invoice_number)

    logger.info("dispute opened invoice=%s opened_by=%s dispute_id=%s", invoice_number, opened_by, dispute["id"])
    _notify_opened(invoice, dispute, seller, guest)
    return {"ok": True, "message": "Dispute opened. An admin will review it shortly.", "dispute_id": dispute["id"]}


def _already_disputed(existing: Optional[dict[str, Any]]) -> AlreadyProcessed:
    if existing and existing["status"] != DisputeStatus.OPEN.value:
        return AlreadyProcessed("This invoice has already been through a dispute process and was resolved.")
    return AlreadyProcessed("A dispute is already open for this invoice. Our admin will review it shortly.")


def _notify_opened(invoice, dispute, seller, guest) -> None:
    number = invoice["invoice_number"]
    notifications.send_email_safe(
        settings.ADMIN_EMAIL,
        f"[Admin] New Dispute Opened - Invoice {number}",
        render_email(
            f"New dispute on invoice {number}",
            [
                f"Invoice: {number} ({invoice['name']})",
                f"Amount: {invoice['amount']} {invoice['currency']}",
                f"Opened by: {dispute['opened_by']}",
                f"Reason: {dispute['reason']}",
                "Keep this link private, it gives admin access to the dispute chat.",
            ],
            action=("Review dispute and join chat", _admin_link(dispute["admin_token"])),
        ),
    )

    by_seller = dispute["opened_by"] == "seller"
    parties = (
        (seller.get("email") if seller else None, not by_seller),
        (guest.get("email") if guest else None, by_seller),
    )
    for email, other_party in parties:
        text = (
            "The other party has filed a dispute on this invoice. Our admin team will review the case within 24-48 hours."
            if other_party
            else "We have received your dispute request. Our admin team will review all messages and decide within 24-48 hours."
        )
        notifications.send_email_safe(
            email,
            f"Dispute Opened - Invoice {number}",
            render_email("Dispute opened", [text, "Funds stay in escrow until the dispute is resolved."]),
        )

    notifications.notify_user(
        invoice["seller_id"],
        "dispute_opened",
        "Dispute Opened",
        f"A dispute has been opened on invoice {number}.",
        {"invoiceNumber": number},
    )


# ==========================================================
# Admin moderation
# ==========================================================

def _dispute_or_reject(conn, admin_token: str) -> dict[str, Any]:
    dispute = disputes.get_dispute_by_token(conn, admin_token=admin_token)
    if not dispute:
        raise NotAuthorized("Invalid admin link.")
    return dispute


def get_dispute_view(admin_token: str) -> dict[str, Any]:
    with get_conn() as conn:
        dispute = _dispute_or_reject(conn, admin_token)
        invoice = invoices.get_invoice(conn, invoice_id=dispute["invoice_id"])
        seller = invoices.get_user(conn, user_id=invoice["seller_id"]) if invoice else None
        guest = invoices.get_guest(conn, invoice_number=dispute["invoice_number"])
        messages = payments.list_chat_messages(conn, invoice_id=dispute["invoice_id"])

    return {
        "dispute": {k: v for k, v in dispute.items() if k != "admin_token"},
        "invoice": invoice,
        "buyer": {"email": guest.get("email"), "momo_number": guest.get("momo_number")} if guest else None,
        "seller": {"name": seller.get("name"), "email": seller.get("email"), "phone": seller.get("phone")} if seller else None,
        "messages": messages,
    }


def post_moderator_message(admin_token: str, body: str) -> dict[str, Any]:
    body = (body or "").strip()
    if not body:
        raise PreconditionFailed("Message cannot be empty.")

    with get_conn() as conn:
        dispute = _dispute_or_reject(conn, admin_token)
        message_id = payments.insert_chat_message(
            conn, invoice_id=dispute["invoice_id"], sender_type="admin", body=body
        )
    if message_id is None:
        raise PreconditionFailed("Chat room not found.", status_code=404)
    return {"ok": True, "message_id": message_id}


# ==========================================================
# Resolution
# ==========================================================

def resolve_dispute(admin_token: str, decision: str, note: Optional[str] = None) -> dict[str, Any]:
    """
    The open -> resolved_* update is the claim for this path. The invoice's
    release code is consumed in the same transaction, so a code or link
    release and a resolution can never both pay out.
    """
    if decision not in DECISIONS:
        raise PreconditionFailed("Decision must be 'seller' or 'buyer'.")
    target = DECISIONS[decision]

    with get_conn() as conn:
        dispute = _dispute_or_reject(conn, admin_token)
        if dispute["status"] != DisputeStatus.OPEN.value:
            raise AlreadyProcessed("This dispute has already been resolved.")
        assert_transition(dispute["status"], target)

        invoice = invoices.get_invoice(conn, invoice_id=dispute["invoice_id"])
        if not invoice or invoice["status"] not in (InvoiceStatus.PAID.value, InvoiceStatus.DELIVERED.value):
            raise PreconditionFailed("The funds for this invoice are no longer in escrow.")

        guest = invoices.get_guest(conn, invoice_number=dispute["invoice_number"])
        if decision == "buyer" and not (guest and guest.get("momo_number")):
            raise PreconditionFailed(
                "Cannot process refund: no buyer payment number found for this invoice. "
                "Please process the refund manually."
            )

    with get_conn() as conn:
        claimed = disputes.claim_dispute_resolution(
            conn,
            dispute_id=dispute["id"],
            new_status=target.value,
            resolution_note=note,
        )
        if not claimed:
            metrics.increment_claim_conflict(f"dispute_{decision}")
            raise AlreadyProcessed("This dispute has already been resolved.")

        cred = credentials.get_confirmation_code(conn, invoice_id=invoice["id"])
        if cred and not credentials.claim_confirmation_code(conn, code_id=cred["id"]):
            # raising rolls the dispute claim back with it
            metrics.increment_claim_conflict(f"dispute_{decision}")
            raise AlreadyProcessed("The funds for this invoice have already been released to the seller.")

        gross = engine.escrowed_amount(conn, invoice, lock=True)
        if decision == "seller":
            number = invoice["invoice_number"]
            plan = engine.build_seller_plan(
                conn,
                invoice,
                unit_type=engine.UNIT_DISPUTE_SELLER,
                unit_ref=number,
                gross=gross,
                referral_key=number,
                external_reference=number,
                description=f"Dispute resolved - payout for invoice {number}",
                finalize=engine.FINALIZE_COMPLETE,
                dispute_id=dispute["id"],
            )
        else:
            plan = engine.build_refund_plan(invoice, guest, gross=gross, dispute_id=dispute["id"])
        attempt = engine.open_attempt_for(conn, plan)

    logger.info(
        "dispute resolved dispute_id=%s invoice=%s decision=%s attempt_id=%s",
        dispute["id"],
        dispute["invoice_number"],
        decision,
        attempt["id"],
    )
    outcome = engine.execute_attempt(attempt)
    _after_resolution(invoice, decision, outcome, guest)

    if decision == "seller":
        message = "Dispute resolved. Funds released to seller."
    else:
        message = (
            f"Dispute resolved. Refund of {outcome.recipient_amount} {invoice['currency']} "
            "has been sent to the buyer's MoMo account."
        )
    return {"ok": True, "message": message, "settlement": outcome.to_dict()}


def _after_resolution(invoice, decision: str, outcome, guest) -> None:
    number = invoice["invoice_number"]
    if decision == "seller":
        chat_text = "Dispute resolved by admin. Decision: Funds have been released to the seller."
    else:
        chat_text = (
            f"Dispute resolved by admin. Decision: Refund of {outcome.recipient_amount} "
            f"{invoice['currency']} processed to the buyer's MoMo account."
        )

    try:
        with get_conn() as conn:
            _system_message(conn, invoice["id"], chat_text)
    except Exception:
        logger.warning("resolution chat message skipped invoice=%s", number)

    # the refund branch e-mails the buyer from the settlement itself
    if decision == "seller":
        notifications.send_email_safe(
            guest.get("email") if guest else None,
            f"Dispute Update: Decision Issued - Invoice {number}",
            render_email(
                "Dispute resolved",
                [
                    f"The admin has reviewed the dispute for invoice {number} and decided to release the funds to the seller.",
                    "If you believe this decision was unfair, please contact support.",
                ],
            ),
        )
