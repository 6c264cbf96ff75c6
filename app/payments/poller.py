# app/payments/poller.py
from __future__ import annotations

import logging
from typing import Any

from db import get_conn
from app.ledger import invoices, payments
from app.payments import processing
from app.providers.factory import get_rail

logger = logging.getLogger("escrow.payments")

SETTLED_STATUSES = ("paid", "delivered", "completed")


def _db_status(invoice_number: str) -> str:
    with get_conn() as conn:
        invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
    return invoice["status"] if invoice else "pending"


def poll_invoice(invoice_number: str) -> tuple[int, dict[str, Any]]:
    """
    Buyer-facing status check. Fast path answers from the store; otherwise
    asks the rail about the latest payment and, on success, runs the same
    idempotent processing as the webhook.
    """
    try:
        with get_conn() as conn:
            invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
            if not invoice:
                return 404, {"status": "not_found"}

            status = invoice["status"]
            if status in SETTLED_STATUSES:
                return 200, {"status": status}

            payment = payments.get_latest_payment(conn, invoice_id=invoice["id"])

        if not payment:
            return 200, {"status": status}

        reference = payment.get("gateway_reference") or payment["payment_ref"]
        result = get_rail().transaction_status(reference)
        logger.info("poll invoice=%s rail_status=%s ref=%s", invoice_number, result.status, reference)

        if result.status == "SUCCESSFUL":
            outcome = processing.process_successful_payment(payment["payment_ref"], source="poller")
            if outcome == processing.DONE:
                return 200, {"status": "paid"}
            # nothing was applied here; report what the store holds
            return 200, {"status": _db_status(invoice_number)}

        return 200, {"status": status, "rail_status": result.status}

    except Exception:
        logger.exception("poll failed invoice=%s", invoice_number)
        try:
            return 200, {"status": _db_status(invoice_number)}
        except Exception:
            logger.exception("poll fallback failed invoice=%s", invoice_number)
            return 200, {"status": "pending"}
