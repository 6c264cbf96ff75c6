# routes/invoices.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from app.delivery import service as delivery
from deps.auth import CurrentUser, get_current_user

router = APIRouter(prefix="/invoice", tags=["invoices"])


@router.post("/{invoice_number}/mark-delivered")
def mark_delivered(invoice_number: str, user: CurrentUser = Depends(get_current_user)):
    return delivery.mark_delivered(seller_id=user.user_id, invoice_number=invoice_number)


@router.post("/{invoice_number}/milestones/{milestone_number}/complete")
def complete_milestone(
    invoice_number: str,
    milestone_number: int = Path(ge=1),
    user: CurrentUser = Depends(get_current_user),
):
    return delivery.complete_milestone(
        seller_id=user.user_id,
        invoice_number=invoice_number,
        milestone_number=milestone_number,
    )
