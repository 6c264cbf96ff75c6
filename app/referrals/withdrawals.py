# app/referrals/withdrawals.py
from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from db import get_conn
from app.escrow.errors import GatewayFailure, NotFound, PreconditionFailed
from app.ledger import referrals
from app.payments.collect import MOMO_RE
from app.providers.factory import get_rail
from services import metrics
from services.redaction import redact_text
from settings import settings

logger = logging.getLogger("escrow.settlement")


def referral_dashboard(user_id: UUID) -> dict[str, Any]:
    with get_conn() as conn:
        account = referrals.get_referral_account(conn, user_id=user_id)
        if not account:
            raise NotFound("User not found.")
        earnings = referrals.list_referral_earnings(conn, referrer_id=user_id)
        withdrawals = referrals.list_withdrawals(conn, user_id=user_id)

    code = account.get("referral_code")
    return {
        "referral_code": code,
        "referral_link": f"{settings.FRONTEND_URL.rstrip('/')}/register?ref={code}" if code else None,
        "balance": int(account["referral_balance"]),
        "min_withdrawal": settings.MIN_REFERRAL_WITHDRAWAL,
        "earnings": earnings,
        "withdrawals": withdrawals,
    }


def request_withdrawal(*, user_id: UUID, amount: int, momo_number: str) -> dict[str, Any]:
    """
    Deduction and pending row commit together before the rail is called; the
    conditional deduction is the claim, so a double submit cannot pay twice.
    """
    amount = int(amount)
    if amount <= 0:
        raise PreconditionFailed("Please enter a valid withdrawal amount.")
    if amount < settings.MIN_REFERRAL_WITHDRAWAL:
        raise PreconditionFailed(
            f"Minimum withdrawal amount is {settings.MIN_REFERRAL_WITHDRAWAL} {settings.CURRENCY}."
        )
    momo_number = (momo_number or "").strip().replace(" ", "")
    if not MOMO_RE.match(momo_number):
        raise PreconditionFailed("Enter a valid MoMo number (e.g. 2376XXXXXXXX).")

    with get_conn() as conn:
        new_balance = referrals.deduct_referral_balance(conn, user_id=user_id, amount=amount)
        if new_balance is None:
            account = referrals.get_referral_account(conn, user_id=user_id)
            if not account:
                raise NotFound("User not found.")
            metrics.increment_claim_conflict("referral_withdrawal")
            if referrals.has_pending_withdrawal(conn, user_id=user_id):
                raise PreconditionFailed(
                    "You already have a pending withdrawal. Please wait for it to be processed before requesting another."
                )
            raise PreconditionFailed(
                f"Insufficient balance. You have {account['referral_balance']} {settings.CURRENCY} available."
            )
        withdrawal = referrals.insert_withdrawal(conn, user_id=user_id, amount=amount, momo_number=momo_number)

    withdrawal_id = withdrawal["id"]
    result = get_rail().withdraw(
        amount=amount,
        phone=momo_number,
        description="Referral earnings withdrawal",
        external_reference=f"ref-withdrawal-{withdrawal_id}",
    )

    if not result.ok and not result.definitive:
        # the rail may have paid; the row stays pending (blocking new withdrawals) for an operator
        logger.error(
            "referral withdrawal outcome unknown withdrawal_id=%s user_id=%s phone=%s error=%s",
            withdrawal_id,
            user_id,
            redact_text(momo_number),
            result.error,
        )
        with get_conn() as conn:
            referrals.mark_withdrawal(
                conn, withdrawal_id=withdrawal_id, new_status="pending", last_error=result.error
            )
        metrics.increment_settlement("referral_withdrawal", "unknown")
        raise GatewayFailure(
            "We could not confirm your withdrawal. It is being checked and your balance will be "
            "restored if it did not go through."
        )

    if not result.ok:
        logger.error(
            "referral withdrawal failed withdrawal_id=%s user_id=%s phone=%s error=%s http_status=%s",
            withdrawal_id,
            user_id,
            redact_text(momo_number),
            result.error,
            result.http_status,
        )
        with get_conn() as conn:
            if referrals.mark_withdrawal(
                conn, withdrawal_id=withdrawal_id, new_status="failed", last_error=result.error
            ):
                referrals.increment_referral_balance(conn, user_id=user_id, amount=amount)
        metrics.increment_settlement("referral_withdrawal", "failed")
        raise GatewayFailure("Withdrawal failed. Your balance has been restored. Please try again later.")

    with get_conn() as conn:
        referrals.mark_withdrawal(
            conn, withdrawal_id=withdrawal_id, new_status="paid", gateway_reference=result.reference
        )
    metrics.increment_settlement("referral_withdrawal", "paid")
    logger.info(
        "referral withdrawal paid withdrawal_id=%s amount=%s phone=%s",
        withdrawal_id,
        amount,
        redact_text(momo_number),
    )
    return {
        "ok": True,
        "withdrawal_id": withdrawal_id,
        "message": f"Your withdrawal of {amount} {settings.CURRENCY} has been sent to {momo_number}. "
        "It should arrive within a few minutes.",
    }
