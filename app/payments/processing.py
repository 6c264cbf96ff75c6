# app/payments/processing.py
from __future__ import annotations

import logging
import secrets
from typing import Any, Optional

from db import get_conn
from app.confirmation.service import mint_credentials, release_link
from app.escrow.state_machine import InvoiceStatus, PaymentStatus, assert_transition, sources_for
from app.ledger import credentials, invoices, payments
from app.settlement.engine import pays_per_milestone
from services import metrics, notifications
from services.email import render_email
from services.receipts import render_receipt_pdf
from settings import settings

logger = logging.getLogger("escrow.payments")

DONE = "done"
ALREADY_DONE = "already_done"
NO_PAYMENT = "no_payment"


def process_successful_payment(payment_ref: str, *, source: str = "webhook") -> str:
    """
    Single entry point for a confirmed buyer charge, shared by the webhook and
    the poller. The marker insert is the gate: exactly one caller per
    payment_ref gets past it, however often or concurrently it is called.

    Returns "done", "already_done" or "no_payment".
    """
    with get_conn() as conn:
        if not payments.claim_processed_payment(conn, payment_ref=payment_ref):
            logger.info("payment already claimed ref=%s source=%s", payment_ref, source)
            metrics.increment_payment_processing(source, ALREADY_DONE)
            return ALREADY_DONE

        payment = payments.get_payment_by_ref(conn, payment_ref=payment_ref)
        if not payment:
            # drop the marker: the ref may belong to a payment row not yet committed
            conn.rollback()
            logger.warning("no payment row for ref=%s source=%s", payment_ref, source)
            metrics.increment_payment_processing(source, NO_PAYMENT)
            return NO_PAYMENT

        invoice_id = payment["invoice_id"]
        # payments processed before markers existed already carry a credential
        if credentials.has_confirmation_code(conn, invoice_id=invoice_id):
            logger.info("invoice already has a confirmation code invoice_id=%s", invoice_id)
            metrics.increment_payment_processing(source, ALREADY_DONE)
            return ALREADY_DONE

        assert_transition(payment["status"], PaymentStatus.PAID)
        payments.mark_payment_paid(conn, payment_id=payment["id"])

        invoice = invoices.get_invoice(conn, invoice_id=invoice_id)
        if not invoice:
            raise LookupError(f"payment {payment_ref} points at missing invoice {invoice_id}")

        if not invoices.update_invoice_status(
            conn,
            invoice_id=invoice_id,
            new_status=InvoiceStatus.PAID.value,
            from_statuses=sources_for(InvoiceStatus.PAID),
        ):
            logger.warning(
                "invoice %s was %s when payment %s confirmed",
                invoice["invoice_number"],
                invoice["status"],
                payment_ref,
            )

        # milestone invoices are released one milestone link at a time, never by code
        cred = None
        if not pays_per_milestone(conn, invoice):
            cred = mint_credentials(conn, invoice_id=invoice_id, seller_id=invoice["seller_id"])

        guest = invoices.get_guest(conn, invoice_number=invoice["invoice_number"])
        chat_token = secrets.token_hex(32)
        if guest:
            invoices.set_guest_chat_token(conn, guest_id=guest["id"], chat_token=chat_token)
        payments.open_chat(conn, invoice_id=invoice_id, invoice_number=invoice["invoice_number"])

        seller = invoices.get_user(conn, user_id=invoice["seller_id"])

    logger.info(
        "payment processed ref=%s invoice=%s amount=%s source=%s",
        payment_ref,
        invoice["invoice_number"],
        payment["amount"],
        source,
    )
    metrics.increment_payment_processing(source, DONE)

    _send_payment_emails(
        invoice=invoice,
        payment=payment,
        cred=cred,
        buyer_email=guest.get("email") if guest else None,
        chat_token=chat_token if guest else None,
        seller=seller,
    )
    return DONE


def _send_payment_emails(
    *,
    invoice: dict[str, Any],
    payment: dict[str, Any],
    cred: Optional[dict[str, Any]],
    buyer_email: Optional[str],
    chat_token: Optional[str],
    seller: Optional[dict[str, Any]],
) -> None:
    number = invoice["invoice_number"]
    currency = invoice.get("currency") or settings.CURRENCY
    amount = f"{payment['amount']} {currency}"
    frontend = settings.FRONTEND_URL.rstrip("/")

    if buyer_email:
        attachments = None
        try:
            pdf = render_receipt_pdf(
                invoice_number=number,
                invoice_name=invoice.get("name") or "",
                currency=currency,
                gross=int(payment["amount"]),
                recipient_amount=int(payment["amount"]),
                fee=0,
                recipient_label="Held in escrow",
                reference=payment.get("gateway_reference") or payment["payment_ref"],
            )
            attachments = [(f"receipt-{number}.pdf", pdf, "application/pdf")]
        except Exception:
            logger.exception("receipt rendering failed invoice=%s", number)

        if cred:
            body = render_email(
                "Payment confirmed",
                [
                    f"Your payment of {amount} for invoice {number} is held securely in escrow.",
                    "Once you have received your order, release the funds to the seller with the button below.",
                    f"Alternatively, give this release code to the seller: {cred['code']}",
                ],
                action=("Confirm receipt and release funds", release_link(cred["verification_token"], invoice["id"])),
            )
        else:
            body = render_email(
                "Payment confirmed",
                [
                    f"Your payment of {amount} for invoice {number} is held securely in escrow.",
                    "This invoice is paid out per milestone. Each time the seller completes a milestone "
                    "you will receive a link to release that milestone's funds.",
                ],
            )
        notifications.send_email_safe(buyer_email, f"Payment Confirmed - Invoice {number}", body, attachments)

        if chat_token:
            notifications.send_email_safe(
                buyer_email,
                f"Your Secure Chat Link - Invoice {number}",
                render_email(
                    "You can now chat with the seller",
                    [
                        "Use the chat to talk to the seller. If there is a problem with your order "
                        "you can open a dispute from the chat.",
                        "Keep this link private, it is unique to your order.",
                    ],
                    action=("Open chat", f"{frontend}/chat/{number}?token={chat_token}"),
                ),
            )

    notifications.notify_user(
        invoice["seller_id"],
        "invoice_paid",
        "Invoice Paid - Deliver Now",
        f"Invoice {number} has been paid. {amount} is secured in escrow. Please deliver what was ordered.",
        {"invoiceNumber": number, "amount": payment["amount"]},
    )

    if seller:
        notifications.send_email_safe(
            seller.get("email"),
            f"Invoice Paid - Please Deliver | Invoice {number}",
            render_email(
                "Your invoice has been paid",
                [
                    f"Invoice {number} has been paid and {amount} is held in escrow.",
                    "Deliver what you agreed on. Funds are released once the buyer confirms receipt.",
                ],
                action=("Open chat with buyer", f"{frontend}/chat/{number}"),
            ),
        )
