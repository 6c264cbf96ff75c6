# routes/disputes.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from app.disputes import service as disputes
from deps.auth import CurrentUser, get_optional_user
from schemas import ModeratorMessageIn, OpenDisputeIn, ResolveDisputeIn

router = APIRouter(prefix="/dispute", tags=["disputes"])


@router.post("/open/{invoice_number}")
def open_dispute(
    invoice_number: str,
    body: OpenDisputeIn,
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    return disputes.open_dispute(
        invoice_number=invoice_number,
        opened_by=body.opened_by,
        reason=body.reason,
        chat_token=body.token,
        user_id=user.user_id if user else None,
    )


# The admin token in the path is the moderator's credential.
@router.get("/admin/{admin_token}")
def dispute_admin_view(admin_token: str):
    return disputes.get_dispute_view(admin_token)


@router.post("/admin/{admin_token}/message")
def dispute_admin_message(admin_token: str, body: ModeratorMessageIn):
    return disputes.post_moderator_message(admin_token, body.message)


@router.post("/admin/{admin_token}/resolve")
def dispute_admin_resolve(admin_token: str, body: ResolveDisputeIn):
    return disputes.resolve_dispute(admin_token, body.decision, body.note)
