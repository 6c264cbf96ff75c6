# routes/webhooks.py
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.payments import processing
from security import verify_webhook_signature
from services.metrics import increment_webhook_event

router = APIRouter(prefix="/payment", tags=["webhooks"])
logger = logging.getLogger("escrow.webhooks")


async def _read_payload(request: Request) -> dict[str, Any]:
    # The rail posts JSON; some deployments forward form fields or query args.
    payload: dict[str, Any] = dict(request.query_params)
    content_type = (request.headers.get("content-type") or "").lower()
    try:
        if "application/json" in content_type:
            body = await request.json()
            if isinstance(body, dict):
                payload.update(body)
        elif content_type:
            form = await request.form()
            payload.update(dict(form))
    except Exception:
        logger.warning("webhook body could not be parsed content_type=%s", content_type)
    return payload


@router.post("/confirmation")
async def payment_confirmation(request: Request):
    payload = await _read_payload(request)

    claims = verify_webhook_signature(payload.get("signature"))
    if claims is None:
        increment_webhook_event(signature_valid=False, applied=False)
        logger.warning("webhook signature invalid ref=%s", payload.get("external_reference"))
        return JSONResponse(status_code=401, content={"error": "INVALID_SIGNATURE"})

    status = str(payload.get("status") or "").upper()
    payment_ref = payload.get("external_reference")

    if status != "SUCCESSFUL" or not payment_ref:
        increment_webhook_event(signature_valid=True, applied=False)
        logger.info("webhook ignored status=%s ref=%s", status or None, payment_ref)
        return {"ok": True, "result": "ignored"}

    # processing is blocking and sends mail on its own event loop, so it runs off this one
    result = await run_in_threadpool(processing.process_successful_payment, str(payment_ref), source="webhook")
    increment_webhook_event(signature_valid=True, applied=result == processing.DONE)
    logger.info("webhook processed ref=%s result=%s", payment_ref, result)
    return {"ok": True, "result": result}
