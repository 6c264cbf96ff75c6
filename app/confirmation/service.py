# app/confirmation/service.py
from __future__ import annotations

import logging
import secrets
from typing import Any
from uuid import UUID

from db import get_conn
from app.escrow.errors import AlreadyProcessed, NotAuthorized, PreconditionFailed
from app.ledger import credentials, invoices
from settings import settings

logger = logging.getLogger("escrow.settlement")

# No 0/O or 1/I: buyers read these codes out over the phone.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
MAX_MINT_ATTEMPTS = 10


class CredentialMintError(RuntimeError):
    pass


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_token() -> str:
    return secrets.token_hex(32)


def mint_credentials(conn, *, invoice_id: UUID, seller_id: UUID) -> dict[str, Any]:
    """
    Code + link token for one invoice. A short-code collision regenerates
    and retries the insert instead of failing the payment.
    """
    for attempt in range(1, MAX_MINT_ATTEMPTS + 1):
        row = credentials.insert_confirmation_code(
            conn,
            invoice_id=invoice_id,
            seller_id=seller_id,
            code=generate_code(),
            verification_token=generate_token(),
        )
        if row:
            return row
        logger.warning("confirmation code collision invoice_id=%s attempt=%s", invoice_id, attempt)

    raise CredentialMintError(f"could not mint a unique confirmation code for invoice {invoice_id}")


def release_link(verification_token: str, invoice_id) -> str:
    return f"{settings.BACKEND_URL.rstrip('/')}/api/verify-payout/{verification_token}/{invoice_id}"


def milestone_link(release_token: str) -> str:
    return f"{settings.BACKEND_URL.rstrip('/')}/api/release-milestone/{release_token}"


# ==========================================================
# Read-only checks behind the confirmation pages (GET)
# ==========================================================

def inspect_link(token: str, invoice_id: str) -> dict[str, Any]:
    """Validate a release link without touching any state."""
    with get_conn() as conn:
        cred = credentials.get_confirmation_by_token(conn, verification_token=token)
        if not cred:
            raise NotAuthorized("Invalid link.")
        if cred["is_used"]:
            raise AlreadyProcessed("Link expired: payout already processed.")
        if str(cred["invoice_id"]) != str(invoice_id):
            raise PreconditionFailed("Link parameters do not match.")
        invoice = invoices.get_invoice(conn, invoice_id=cred["invoice_id"])

    if not invoice:
        raise NotAuthorized("Invalid link.")
    return invoice


def inspect_milestone_link(release_token: str) -> dict[str, Any]:
    with get_conn() as conn:
        milestone = invoices.get_milestone_by_token(conn, release_token=release_token)

    if not milestone:
        raise NotAuthorized("This release link is invalid or has already been used.")
    if milestone["status"] == "released":
        raise AlreadyProcessed("This milestone has already been paid out to the seller.")
    if milestone["status"] != "completed":
        raise PreconditionFailed("This milestone has not been marked as complete by the seller yet.")
    return milestone
