# routes/referral.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.referrals import withdrawals
from deps.auth import CurrentUser, get_current_user
from schemas import WithdrawIn

router = APIRouter(prefix="/referral", tags=["referral"])


@router.get("/dashboard")
def referral_dashboard(user: CurrentUser = Depends(get_current_user)):
    return withdrawals.referral_dashboard(user.user_id)


@router.post("/withdraw")
def referral_withdraw(body: WithdrawIn, user: CurrentUser = Depends(get_current_user)):
    return withdrawals.request_withdrawal(
        user_id=user.user_id,
        amount=body.amount,
        momo_number=body.momo_number,
    )
