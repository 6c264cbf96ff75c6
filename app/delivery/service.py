# app/delivery/service.py
from __future__ import annotations

import logging
import secrets
from typing import Any
from uuid import UUID

from db import get_conn
from app.confirmation.service import milestone_link
from app.escrow.errors import NotFound, PreconditionFailed
from app.escrow.state_machine import InvoiceStatus, MilestoneStatus, assert_transition
from app.ledger import invoices
from services import notifications
from services.email import render_email

logger = logging.getLogger("escrow.settlement")


def _owned_invoice(conn, *, invoice_number: str, seller_id: UUID) -> dict[str, Any]:
    invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
    # Someone else's invoice looks exactly like a missing one.
    if not invoice or str(invoice["seller_id"]) != str(seller_id):
        raise NotFound("Invoice not found")
    return invoice


def mark_delivered(*, seller_id: UUID, invoice_number: str) -> dict[str, Any]:
    with get_conn() as conn:
        invoice = _owned_invoice(conn, invoice_number=invoice_number, seller_id=seller_id)
        if invoice["status"] != InvoiceStatus.PAID.value:
            raise PreconditionFailed(
                "You can only mark an invoice as delivered after the buyer has made a payment.",
                status_code=403,
            )
        assert_transition(invoice["status"], InvoiceStatus.DELIVERED)

        changed = invoices.update_invoice_status(
            conn,
            invoice_id=invoice["id"],
            new_status=InvoiceStatus.DELIVERED.value,
            from_statuses=(InvoiceStatus.PAID.value,),
        )
        if not changed:
            raise PreconditionFailed("This invoice is no longer awaiting delivery.")
        guest = invoices.get_guest(conn, invoice_number=invoice_number)

    logger.info("invoice delivered invoice=%s", invoice_number)

    if not guest:
        return {"ok": True, "message": "Invoice marked as delivered, but buyer email not found."}

    notifications.send_email_safe(
        guest.get("email"),
        f"Action Required: Confirm Your Delivery - Invoice {invoice_number}",
        render_email(
            "Your order has been delivered",
            [
                f"The seller has marked invoice {invoice_number} ({invoice['name']}) as delivered.",
                f"Amount: {invoice['amount']} {invoice['currency']}",
                "If you are satisfied, release the funds to the seller. "
                "If you have NOT received your order, do not release the funds and contact the seller.",
            ],
        ),
    )
    return {"ok": True, "message": "Invoice marked as delivered and buyer has been notified."}


def complete_milestone(*, seller_id: UUID, invoice_number: str, milestone_number: int) -> dict[str, Any]:
    """
    Seller marks milestone `milestone_number` done. Every lower-numbered milestone
    must already be released; the buyer gets a single-use release link.
    """
    with get_conn() as conn:
        invoice = _owned_invoice(conn, invoice_number=invoice_number, seller_id=seller_id)
        if invoice["status"] not in (InvoiceStatus.PAID.value, InvoiceStatus.DELIVERED.value):
            raise PreconditionFailed("Milestones can only be completed on a paid invoice.")

        milestone = invoices.get_milestone(conn, invoice_id=invoice["id"], milestone_number=milestone_number)
        if not milestone:
            raise NotFound("Milestone not found.")
        if milestone["status"] != MilestoneStatus.PENDING.value:
            raise PreconditionFailed(f"This milestone is already marked as '{milestone['status']}'.")

        earlier = [
            m for m in invoices.list_milestones(conn, invoice_id=invoice["id"])
            if m["milestone_number"] < milestone_number and m["status"] != MilestoneStatus.RELEASED.value
        ]
        if earlier:
            raise PreconditionFailed(
                "Previous milestones must be released before marking this one complete.",
                extra={"blocking_milestone": earlier[0]["milestone_number"]},
            )

        guest = invoices.get_guest(conn, invoice_number=invoice_number)
        if not guest:
            raise PreconditionFailed("Buyer information not found. Has the buyer paid yet?")

        assert_transition(milestone["status"], MilestoneStatus.COMPLETED)
        release_token = secrets.token_hex(32)
        if not invoices.mark_milestone_completed(conn, milestone_id=milestone["id"], release_token=release_token):
            raise PreconditionFailed("This milestone was updated by another request.")

    logger.info("milestone completed invoice=%s milestone=%s", invoice_number, milestone_number)

    notifications.send_email_safe(
        guest.get("email"),
        f"Milestone Complete: {milestone['label']} - Invoice {invoice_number}",
        render_email(
            "A milestone is ready for release",
            [
                f"The seller has marked Milestone {milestone_number}: {milestone['label']} as complete "
                f"for invoice {invoice['name']}.",
                f"Amount: {milestone['amount']} {invoice['currency']}",
                "This link can only be used once. Keep it private.",
            ],
            action=("Review and release payment", milestone_link(release_token)),
        ),
    )
    return {
        "ok": True,
        "message": f"Milestone {milestone_number} marked as complete. The buyer has been emailed a release link.",
    }
