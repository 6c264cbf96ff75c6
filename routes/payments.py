# routes/payments.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.payments import collect, poller
from deps.auth import CurrentUser, get_optional_user
from schemas import RequestPaymentIn, RequestPaymentOut

router = APIRouter(tags=["payments"])


@router.post("/api/requestPayment", response_model=RequestPaymentOut)
def request_payment(
    body: RequestPaymentIn,
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    return collect.request_payment(
        invoice_number=body.invoice_number,
        phone=body.phone,
        email=str(body.email),
        user_id=user.user_id if user else None,
    )


@router.get("/payment/poll/{invoice_number}")
def poll_payment(invoice_number: str):
    status_code, body = poller.poll_invoice(invoice_number)
    return JSONResponse(status_code=status_code, content=body)
