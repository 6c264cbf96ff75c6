# app/settlement/engine.py
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from db import get_conn
from app.escrow.errors import AlreadyProcessed, GatewayFailure, NotAuthorized, NotFound, PreconditionFailed
from app.escrow.fees import FeeSplit, refund_split, seller_split
from app.escrow.state_machine import AttemptStatus, DisputeStatus, InvoiceStatus, assert_transition, sources_for
from app.ledger import credentials, disputes, invoices, payments, referrals, settlements
from app.providers.factory import get_rail
from services import metrics, notifications
from services.email import render_email
from services.receipts import render_receipt_pdf
from services.redaction import redact_text
from settings import settings

logger = logging.getLogger("escrow.settlement")

UNIT_INVOICE = "invoice"
UNIT_MILESTONE = "milestone"
UNIT_DISPUTE_SELLER = "dispute_seller"
UNIT_DISPUTE_REFUND = "dispute_refund"

# What bookkeeping does to the invoice once the money has moved
FINALIZE_COMPLETE = "complete_invoice"
FINALIZE_MILESTONES = "milestones"
FINALIZE_REFUND = "refund_invoice"


@dataclass(frozen=True)
class SettlementOutcome:
    attempt_id: int
    unit_type: str
    invoice_number: str
    split: FeeSplit
    recipient_amount: int
    gateway_reference: Optional[str]
    settled: bool
    remaining_milestones: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "unit_type": self.unit_type,
            "invoice_number": self.invoice_number,
            "recipient_amount": self.recipient_amount,
            "split": self.split.to_dict(),
            "gateway_reference": self.gateway_reference,
            "settled": self.settled,
            "remaining_milestones": self.remaining_milestones,
        }


def _split_from_plan(plan: dict[str, Any]) -> FeeSplit:
    return FeeSplit(**plan["split"])


# ==========================================================
# Transfer plans (stored on the attempt row as jsonb)
# ==========================================================

def build_seller_plan(
    conn,
    invoice: dict[str, Any],
    *,
    unit_type: str,
    unit_ref: str,
    gross: int,
    referral_key: str,
    external_reference: str,
    description: str,
    finalize: str,
    milestone: Optional[dict[str, Any]] = None,
    dispute_id: Optional[int] = None,
) -> dict[str, Any]:
    seller = invoices.get_user(conn, user_id=invoice["seller_id"])
    if not seller or not seller.get("phone"):
        raise PreconditionFailed("The seller has no payout number on file. Please contact support.")

    referrer_id = seller.get("referred_by")
    split = seller_split(gross, has_referrer=referrer_id is not None)

    return {
        "unit_type": unit_type,
        "unit_ref": unit_ref,
        "invoice_id": str(invoice["id"]),
        "invoice_number": invoice["invoice_number"],
        "invoice_name": invoice.get("name") or "",
        "currency": invoice.get("currency") or settings.CURRENCY,
        "seller_id": str(seller["id"]),
        "recipient_user_id": str(seller["id"]),
        "recipient_phone": seller["phone"],
        "recipient_email": seller.get("email"),
        "recipient_name": seller.get("name"),
        "amount": split.recipient_amount,
        "split": split.to_dict(),
        "referrer_id": str(referrer_id) if referrer_id else None,
        "referral_key": referral_key,
        "external_reference": external_reference,
        "description": description,
        "method": "Mobile Money",
        "payout_status": "paid",
        "finalize": finalize,
        "milestone_id": milestone["id"] if milestone else None,
        "milestone_label": milestone.get("label") if milestone else None,
        "dispute_id": dispute_id,
    }


def build_refund_plan(
    invoice: dict[str, Any],
    guest: dict[str, Any],
    *,
    gross: int,
    dispute_id: Optional[int] = None,
) -> dict[str, Any]:
    """The buyer bears the platform fee; there is no referral cut on a refund."""
    split = refund_split(gross)
    invoice_number = invoice["invoice_number"]

    return {
        "unit_type": UNIT_DISPUTE_REFUND,
        "unit_ref": invoice_number,
        "invoice_id": str(invoice["id"]),
        "invoice_number": invoice_number,
        "invoice_name": invoice.get("name") or "",
        "currency": invoice.get("currency") or settings.CURRENCY,
        "seller_id": str(invoice["seller_id"]),
        # refund rows stay attributed to the invoice owner
        "recipient_user_id": str(invoice["seller_id"]),
        "recipient_phone": guest["momo_number"],
        "recipient_email": guest.get("email"),
        "recipient_name": None,
        "amount": split.recipient_amount,
        "split": split.to_dict(),
        "referrer_id": None,
        "referral_key": None,
        "external_reference": f"refund-{invoice_number}",
        "description": f"Dispute refund for invoice {invoice_number}",
        "method": "Refund to Buyer",
        "payout_status": "refunded",
        "finalize": FINALIZE_REFUND,
        "milestone_id": None,
        "milestone_label": None,
        "dispute_id": dispute_id,
    }


def open_attempt_for(conn, plan: dict[str, Any]) -> dict[str, Any]:
    """Call in the same transaction as the unit's claim."""
    return settlements.open_attempt(
        conn,
        unit_type=plan["unit_type"],
        unit_ref=plan["unit_ref"],
        invoice_id=UUID(plan["invoice_id"]),
        invoice_number=plan["invoice_number"],
        amount=plan["amount"],
        recipient_phone=plan["recipient_phone"],
        external_reference=plan["external_reference"],
        plan=plan,
    )


def pays_per_milestone(conn, invoice: dict[str, Any]) -> bool:
    if invoice.get("payment_type") == "installment":
        return True
    return bool(invoices.list_milestones(conn, invoice_id=invoice["id"]))


def escrowed_amount(conn, invoice: dict[str, Any], *, lock: bool = False) -> int:
    """
    Gross still held for the invoice: full amount, or the unreleased milestones.
    `lock` row-locks the milestones so a concurrent release cannot be counted.
    """
    if invoice.get("payment_type") != "installment":
        return int(invoice["amount"])
    rows = invoices.list_milestones(conn, invoice_id=invoice["id"], for_update=lock)
    if not rows:
        return int(invoice["amount"])
    return sum(int(m["amount"]) for m in rows if m["status"] != "released")


# ==========================================================
# Transfer + bookkeeping
# ==========================================================

def execute_attempt(attempt: dict[str, Any]) -> SettlementOutcome:
    """
    Runs after the claim has committed. The attempt must be CLAIMED or RETRYING.
    """
    plan = attempt["plan"]
    attempt_id = attempt["id"]
    unit_type = plan["unit_type"]
    from_status = attempt["status"]

    rail = get_rail()
    result = rail.withdraw(
        amount=int(plan["amount"]),
        phone=plan["recipient_phone"],
        description=plan["description"],
        external_reference=plan["external_reference"],
    )

    if not result.ok:
        new_status = AttemptStatus.TRANSFER_FAILED if result.definitive else AttemptStatus.TRANSFER_UNKNOWN
        assert_transition(from_status, new_status)
        with get_conn() as conn:
            settlements.mark_attempt(
                conn,
                attempt_id=attempt_id,
                new_status=new_status.value,
                from_status=from_status,
                last_error=(result.error or "TRANSFER_FAILED")[:500],
                count_attempt=True,
            )
        metrics.increment_settlement(unit_type, new_status.value.lower())
        logger.error(
            "transfer failed attempt_id=%s unit=%s:%s invoice=%s amount=%s to=%s status=%s http_status=%s error=%s",
            attempt_id,
            unit_type,
            plan["unit_ref"],
            plan["invoice_number"],
            plan["amount"],
            redact_text(plan["recipient_phone"]),
            new_status.value,
            result.http_status,
            result.error,
        )
        raise GatewayFailure()

    assert_transition(from_status, AttemptStatus.TRANSFERRED)
    with get_conn() as conn:
        settlements.mark_attempt(
            conn,
            attempt_id=attempt_id,
            new_status=AttemptStatus.TRANSFERRED.value,
            from_status=from_status,
            gateway_reference=result.reference,
            count_attempt=True,
        )

    split = _split_from_plan(plan)
    logger.info(
        "transfer sent attempt_id=%s unit=%s:%s invoice=%s gross=%s fee=%s platform=%s referral=%s amount=%s ref=%s",
        attempt_id,
        unit_type,
        plan["unit_ref"],
        plan["invoice_number"],
        split.gross,
        split.total_fee,
        split.platform_share,
        split.referral_share,
        split.recipient_amount,
        result.reference,
    )

    # Money has moved: from here on nothing may raise to the caller.
    try:
        remaining = _book(attempt_id, plan, result.reference)
    except Exception:
        metrics.increment_settlement(unit_type, "bookkeeping_failed")
        logger.exception(
            "bookkeeping failed after transfer attempt_id=%s invoice=%s; left TRANSFERRED for reconciliation",
            attempt_id,
            plan["invoice_number"],
        )
        return SettlementOutcome(
            attempt_id=attempt_id,
            unit_type=unit_type,
            invoice_number=plan["invoice_number"],
            split=split,
            recipient_amount=split.recipient_amount,
            gateway_reference=result.reference,
            settled=False,
        )

    outcome = SettlementOutcome(
        attempt_id=attempt_id,
        unit_type=unit_type,
        invoice_number=plan["invoice_number"],
        split=split,
        recipient_amount=split.recipient_amount,
        gateway_reference=result.reference,
        settled=True,
        remaining_milestones=remaining,
    )
    _after_booking(plan, outcome)
    return outcome


def _book(attempt_id: int, plan: dict[str, Any], gateway_reference: Optional[str]) -> Optional[int]:
    """
    Payout row, invoice/milestone status and SETTLED marker in one transaction.
    Every write is keyed or compare-and-set, so replaying it is harmless.
    """
    with get_conn() as conn:
        settlements.insert_payout(
            conn,
            settlement_id=attempt_id,
            user_id=UUID(plan["recipient_user_id"]) if plan.get("recipient_user_id") else None,
            recipient_phone=plan["recipient_phone"],
            amount=int(plan["amount"]),
            method=plan["method"],
            status=plan["payout_status"],
            invoice_id=UUID(plan["invoice_id"]),
            invoice_number=plan["invoice_number"],
            milestone_id=plan.get("milestone_id"),
            gateway_reference=gateway_reference,
        )
        remaining = _finalize(conn, plan)
        settlements.mark_attempt(
            conn,
            attempt_id=attempt_id,
            new_status=AttemptStatus.SETTLED.value,
            from_status=AttemptStatus.TRANSFERRED.value,
            gateway_reference=gateway_reference,
        )
    metrics.increment_settlement(plan["unit_type"], "settled")
    return remaining


def _finalize(conn, plan: dict[str, Any]) -> Optional[int]:
    invoice_id = UUID(plan["invoice_id"])
    kind = plan["finalize"]

    if kind == FINALIZE_REFUND:
        target = InvoiceStatus.REFUNDED
    elif kind == FINALIZE_MILESTONES:
        remaining = invoices.count_unreleased_milestones(conn, invoice_id=invoice_id)
        if remaining > 0:
            return remaining
        target = InvoiceStatus.COMPLETED
    else:
        target = InvoiceStatus.COMPLETED

    changed = invoices.update_invoice_status(
        conn,
        invoice_id=invoice_id,
        new_status=target.value,
        from_statuses=sources_for(target),
    )
    if not changed:
        logger.info("invoice %s already left escrow, status untouched", plan["invoice_number"])
    return 0 if kind == FINALIZE_MILESTONES else None


def _after_booking(plan: dict[str, Any], outcome: SettlementOutcome) -> None:
    if plan.get("referrer_id") and outcome.split.referral_share > 0:
        credit_referral(
            referrer_id=UUID(plan["referrer_id"]),
            referred_id=UUID(plan["seller_id"]),
            source_ref=plan["referral_key"],
            gross_amount=outcome.split.gross,
            earned_amount=outcome.split.referral_share,
        )
    _notify(plan, outcome)


# ==========================================================
# Referral credit
# ==========================================================

def credit_referral(
    *,
    referrer_id: UUID,
    referred_id: UUID,
    source_ref: str,
    gross_amount: int,
    earned_amount: int,
) -> bool:
    """
    Insert the earning first; bump the balance only when that insert was new.
    Best-effort: the transfer it belongs to has already happened.
    """
    try:
        with get_conn() as conn:
            inserted = referrals.insert_referral_earning(
                conn,
                referrer_id=referrer_id,
                referred_id=referred_id,
                source_ref=source_ref,
                gross_amount=gross_amount,
                earned_amount=earned_amount,
            )
            if inserted:
                referrals.increment_referral_balance(conn, user_id=referrer_id, amount=earned_amount)
    except Exception:
        logger.exception("referral credit failed source_ref=%s", source_ref)
        return False

    if inserted:
        logger.info("referral credited source_ref=%s referrer=%s amount=%s", source_ref, referrer_id, earned_amount)
    else:
        logger.info("referral already recorded source_ref=%s, balance untouched", source_ref)
    return inserted


# ==========================================================
# Notifications (best-effort)
# ==========================================================

def _receipt(plan: dict[str, Any], outcome: SettlementOutcome, recipient_label: str):
    try:
        pdf = render_receipt_pdf(
            invoice_number=plan["invoice_number"],
            invoice_name=plan["invoice_name"],
            currency=plan["currency"],
            gross=outcome.split.gross,
            recipient_amount=outcome.recipient_amount,
            fee=outcome.split.total_fee,
            recipient_label=recipient_label,
            reference=outcome.gateway_reference,
        )
    except Exception:
        logger.exception("receipt rendering failed invoice=%s", plan["invoice_number"])
        return None
    return [(f"receipt-{plan['invoice_number']}.pdf", pdf, "application/pdf")]


def _notify(plan: dict[str, Any], outcome: SettlementOutcome) -> None:
    currency = plan["currency"]
    amount = f"{outcome.recipient_amount} {currency}"
    invoice_number = plan["invoice_number"]
    seller_id = UUID(plan["seller_id"])

    if plan["unit_type"] == UNIT_DISPUTE_REFUND:
        notifications.notify_user(
            seller_id,
            "dispute_resolved",
            "Dispute Resolved",
            f"The dispute on invoice {invoice_number} was resolved in the buyer's favour.",
            {"invoiceNumber": invoice_number},
        )
        notifications.send_email_safe(
            plan.get("recipient_email"),
            f"Refund Processed - Invoice {invoice_number}",
            render_email(
                "Refund processed",
                [
                    f"A refund of {amount} for invoice {invoice_number} has been sent to your Mobile Money account.",
                    f"A platform fee of {outcome.split.total_fee} {currency} was deducted.",
                ],
            ),
            _receipt(plan, outcome, "Refund to buyer"),
        )
        return

    if plan["unit_type"] == UNIT_MILESTONE:
        label = plan.get("milestone_label") or "milestone"
        kind, title = "milestone_released", "Milestone Payout Sent"
        body = f'{amount} has been sent to your Mobile Money account for milestone: "{label}".'
    else:
        kind, title = "payout_sent", "Payout Sent"
        body = f"{amount} has been sent to your Mobile Money account for invoice {invoice_number}."

    notifications.notify_user(
        seller_id,
        kind,
        title,
        body,
        {"amount": outcome.recipient_amount, "invoiceNumber": invoice_number},
    )

    paragraphs = [
        body,
        f"Gross amount: {outcome.split.gross} {currency}. Platform fee: {outcome.split.total_fee} {currency}.",
    ]
    if outcome.remaining_milestones == 0 and plan["unit_type"] == UNIT_MILESTONE:
        paragraphs.append("All milestones have been released. This invoice is now complete.")
    elif outcome.remaining_milestones:
        paragraphs.append(f"Remaining milestones: {outcome.remaining_milestones}")

    notifications.send_email_safe(
        plan.get("recipient_email"),
        f"{title} - Invoice {invoice_number}",
        render_email(title, paragraphs),
        _receipt(plan, outcome, "Sent to seller"),
    )


# ==========================================================
# Settlement triggers
# ==========================================================

def _claim_invoice(code_id: int) -> dict[str, Any]:
    with get_conn() as conn:
        claimed = credentials.claim_confirmation_code(conn, code_id=code_id)
        if not claimed:
            metrics.increment_claim_conflict(UNIT_INVOICE)
            raise AlreadyProcessed("This invoice has already been paid out.")

        invoice = invoices.get_invoice(conn, invoice_id=claimed["invoice_id"])
        if not invoice:
            raise NotFound("Invoice not found")
        # re-checked under the claim; raising here rolls the claim back
        _ensure_whole_invoice_release(conn, invoice)

        number = invoice["invoice_number"]
        plan = build_seller_plan(
            conn,
            invoice,
            unit_type=UNIT_INVOICE,
            unit_ref=number,
            gross=int(invoice["amount"]),
            referral_key=number,
            external_reference=number,
            description=f"Escrow payout for invoice {number}",
            finalize=FINALIZE_COMPLETE,
        )
        return open_attempt_for(conn, plan)


def _ensure_releasable(conn, invoice: dict[str, Any]) -> None:
    if not payments.has_paid_payment(conn, invoice_id=invoice["id"]):
        raise PreconditionFailed(f"Invoice {invoice['invoice_number']} has not been paid yet.")


def _ensure_no_open_dispute(conn, invoice: dict[str, Any]) -> None:
    dispute = disputes.get_dispute_for_invoice(conn, invoice_id=invoice["id"])
    if dispute and dispute["status"] == DisputeStatus.OPEN.value:
        raise PreconditionFailed(
            "A dispute is open on this invoice. Funds stay in escrow until an admin resolves it.",
            status_code=403,
        )


def _ensure_whole_invoice_release(conn, invoice: dict[str, Any]) -> None:
    """Code and link releases pay the full gross; milestone invoices pay per milestone."""
    if pays_per_milestone(conn, invoice):
        raise PreconditionFailed(
            "This invoice is paid out per milestone. Use the release link sent for each milestone."
        )
    _ensure_no_open_dispute(conn, invoice)


def settle_invoice_by_code(invoice_number: str, code: str) -> SettlementOutcome:
    """Seller submits the buyer's short code."""
    submitted = (code or "").strip().upper()

    with get_conn() as conn:
        invoice = invoices.get_invoice_by_number(conn, invoice_number=invoice_number)
        if not invoice:
            raise NotAuthorized()
        if invoice["status"] in (InvoiceStatus.COMPLETED.value, InvoiceStatus.REFUNDED.value):
            raise AlreadyProcessed(f"Invoice {invoice_number} has already been paid out.")

        _ensure_releasable(conn, invoice)

        cred = credentials.get_confirmation_code(conn, invoice_id=invoice["id"])
        if not cred:
            raise NotAuthorized()
        if cred["is_used"]:
            raise AlreadyProcessed(f"Invoice {invoice_number} has already been paid out.")
        # pre-check only; the claim below is what actually gates the transfer
        if not hmac.compare_digest(cred["code"], submitted):
            raise NotAuthorized("The code you entered is incorrect. Please ask the buyer for their code.")
        _ensure_whole_invoice_release(conn, invoice)
        code_id = cred["id"]

    attempt = _claim_invoice(code_id)
    return execute_attempt(attempt)


def settle_invoice_by_link(token: str, invoice_id: str) -> SettlementOutcome:
    """
    Buyer confirmed from the e-mailed page. `invoice_id` comes from the URL and
    must match the invoice the token was minted for.
    """
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
        _ensure_releasable(conn, invoice)
        _ensure_whole_invoice_release(conn, invoice)
        code_id = cred["id"]

    attempt = _claim_invoice(code_id)
    return execute_attempt(attempt)


def settle_milestone(release_token: str) -> SettlementOutcome:
    with get_conn() as conn:
        milestone = invoices.get_milestone_by_token(conn, release_token=release_token)
        if not milestone:
            raise NotAuthorized("This release link is invalid or has already been used.")
        if milestone["status"] == "released":
            raise AlreadyProcessed("This milestone has already been paid out to the seller.")
        if milestone["status"] != "completed":
            raise PreconditionFailed("This milestone has not been marked as complete by the seller yet.")
        milestone_id = milestone["id"]

    with get_conn() as conn:
        claimed = credentials.claim_milestone_release(conn, milestone_id=milestone_id)
        if not claimed:
            metrics.increment_claim_conflict(UNIT_MILESTONE)
            raise AlreadyProcessed("This milestone has already been paid out to the seller.")

        invoice = invoices.get_invoice(conn, invoice_id=claimed["invoice_id"])
        if not invoice:
            raise NotFound("Invoice not found")
        _ensure_no_open_dispute(conn, invoice)

        number = invoice["invoice_number"]
        plan = build_seller_plan(
            conn,
            invoice,
            unit_type=UNIT_MILESTONE,
            unit_ref=str(claimed["id"]),
            gross=int(claimed["amount"]),
            referral_key=f"{number}-ms{claimed['id']}",
            external_reference=f"milestone-{claimed['id']}",
            description=f"Escrow milestone payout: {claimed['label']} (Invoice {number})",
            finalize=FINALIZE_MILESTONES,
            milestone=claimed,
        )
        attempt = open_attempt_for(conn, plan)

    return execute_attempt(attempt)


# ==========================================================
# Recovery
# ==========================================================

def retry_settlement(attempt_id: int) -> SettlementOutcome:
    """
    Replay the stored transfer of an attempt the rail definitively refused.
    The unit stays claimed; only the attempt row moves.
    """
    with get_conn() as conn:
        attempt = settlements.get_attempt(conn, attempt_id=attempt_id)
        if not attempt:
            raise NotFound("Settlement attempt not found")
        assert_transition(attempt["status"], AttemptStatus.RETRYING)

        moved = settlements.mark_attempt(
            conn,
            attempt_id=attempt_id,
            new_status=AttemptStatus.RETRYING.value,
            from_status=AttemptStatus.TRANSFER_FAILED.value,
            last_error=attempt.get("last_error"),
        )
        if not moved:
            metrics.increment_claim_conflict(attempt["unit_type"])
            raise AlreadyProcessed("This settlement is already being retried.")

    attempt = dict(attempt, status=AttemptStatus.RETRYING.value)
    logger.info("retrying settlement attempt_id=%s invoice=%s", attempt_id, attempt["invoice_number"])
    return execute_attempt(attempt)


def complete_settlement(attempt_id: int) -> SettlementOutcome:
    """Finish bookkeeping for an attempt whose transfer went through."""
    with get_conn() as conn:
        attempt = settlements.get_attempt(conn, attempt_id=attempt_id)
    if not attempt:
        raise NotFound("Settlement attempt not found")
    if attempt["status"] == AttemptStatus.SETTLED.value:
        raise AlreadyProcessed("This settlement is already complete.")
    assert_transition(attempt["status"], AttemptStatus.SETTLED)

    plan = attempt["plan"]
    remaining = _book(attempt_id, plan, attempt.get("gateway_reference"))
    split = _split_from_plan(plan)
    outcome = SettlementOutcome(
        attempt_id=attempt_id,
        unit_type=plan["unit_type"],
        invoice_number=plan["invoice_number"],
        split=split,
        recipient_amount=split.recipient_amount,
        gateway_reference=attempt.get("gateway_reference"),
        settled=True,
        remaining_milestones=remaining,
    )
    _after_booking(plan, outcome)
    logger.info("settlement completed by reconciliation attempt_id=%s", attempt_id)
    return outcome
