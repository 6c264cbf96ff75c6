# app/payments/collect.py
from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Optional
from uuid import UUID

from db import get_conn
from app.escrow.errors import GatewayFailure, NotFound, PreconditionFailed
from app.escrow.state_machine import InvoiceStatus
from app.ledger import invoices, payments
from app.providers.factory import get_rail
from services.redaction import redact_text
from settings import settings

logger = logging.getLogger("escrow.payments")

MOMO_RE = re.compile(r"^237[62]\d{8}$")


def detect_operator(phone: str) -> str:
    """
    Cameroon numbering plan, digits after 2376:
      67x, 68x          MTN
      66x               ORANGE
      690-698 / 699     ORANGE / MTN
      650-654 / 655-659 MTN / ORANGE
    """
    if not MOMO_RE.match(phone or ""):
        return "UNKNOWN"
    d5, d6 = phone[4], phone[5]
    if d5 in ("7", "8"):
        return "MTN"
    if d5 == "6":
        return "ORANGE"
    if d5 == "9":
        return "MTN" if d6 == "9" else "ORANGE"
    if d5 == "5":
        return "MTN" if int(d6) <= 4 else "ORANGE"
    return "UNKNOWN"


def request_payment(
    *,
    invoice_number: str,
    phone: str,
    email: str,
    user_id: Optional[UUID] = None,
) -> dict[str, Any]:
    """
    Trigger the buyer's MoMo prompt. The payment row is committed before the
    rail is called because the webhook can arrive almost immediately.
    """
    phone = (phone or "").strip()
    if not MOMO_RE.match(phone):
        raise PreconditionFailed("Enter a valid Cameroonian phone number (e.g. 2376XXXXXXXX).")

    payment_ref = str(uuid.uuid4())
    operator = detect_operator(phone)

    with get_conn() as conn:
        invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
        if not invoice:
            raise NotFound("Invoice not found")
        if invoice["status"] != InvoiceStatus.PENDING.value:
            raise PreconditionFailed(f"Invoice {invoice_number} is {invoice['status']} and cannot be paid.")

        payments.insert_payment(
            conn,
            invoice_id=invoice["id"],
            provider=operator,
            payment_ref=payment_ref,
            amount=int(invoice["amount"]),
            currency=invoice.get("currency") or settings.CURRENCY,
        )
        # captured before the prompt so reminder jobs can reach the buyer
        invoices.upsert_guest(
            conn,
            email=email,
            momo_number=phone,
            invoice_number=invoice_number,
            user_id=user_id,
        )

    result = get_rail().collect(
        amount=int(invoice["amount"]),
        phone=phone,
        description=invoice.get("name") or f"Invoice {invoice_number}",
        external_reference=payment_ref,
    )
    if not result.ok:
        logger.error(
            "collect failed invoice=%s ref=%s phone=%s error=%s http_status=%s",
            invoice_number,
            payment_ref,
            redact_text(phone),
            result.error,
            result.http_status,
        )
        raise GatewayFailure("Failed to trigger payment. Please try again.")

    if result.reference:
        with get_conn() as conn:
            payments.set_gateway_reference(conn, payment_ref=payment_ref, gateway_reference=result.reference)

    logger.info("collect requested invoice=%s ref=%s operator=%s", invoice_number, payment_ref, operator)
    return {
        "success": True,
        "reference": result.reference,
        "payment_ref": payment_ref,
        "operator": operator,
        "message": "Please check your phone for the MoMo prompt, or dial *126# or #150*50# to complete the payment.",
    }
