# app/settlement/reconcile.py
from __future__ import annotations

import logging
from typing import Any

from db import get_conn
from app.escrow.errors import EscrowError
from app.escrow.state_machine import AttemptStatus
from app.ledger import settlements
from app.settlement import engine

logger = logging.getLogger("escrow.settlement")

# Needs a human: money may or may not have moved, or the rail refused it.
ATTENTION_STATUSES = (
    AttemptStatus.TRANSFER_UNKNOWN.value,
    AttemptStatus.TRANSFER_FAILED.value,
    AttemptStatus.CLAIMED.value,
)


def run_reconcile(*, stale_minutes: int = 5, limit: int = 100) -> dict[str, Any]:
    """
    Finish bookkeeping for transfers that went through but never reached
    SETTLED, and report the attempts that need an operator.
    """
    with get_conn() as conn:
        transferred = settlements.list_attempts(
            conn,
            statuses=(AttemptStatus.TRANSFERRED.value,),
            older_than_minutes=stale_minutes,
            limit=limit,
        )
        attention = settlements.list_attempts(
            conn,
            statuses=ATTENTION_STATUSES,
            older_than_minutes=stale_minutes,
            limit=limit,
        )

    completed: list[int] = []
    errors: list[dict[str, Any]] = []
    for attempt in transferred:
        attempt_id = attempt["id"]
        try:
            engine.complete_settlement(attempt_id)
            completed.append(attempt_id)
        except EscrowError as exc:
            # settled by a concurrent run
            logger.info("reconcile skipped attempt_id=%s code=%s", attempt_id, exc.code)
        except Exception as exc:
            logger.exception("reconcile failed attempt_id=%s", attempt_id)
            errors.append({"attempt_id": attempt_id, "error": type(exc).__name__})

    needs_attention = [
        {
            "attempt_id": a["id"],
            "status": a["status"],
            "invoice_number": a["invoice_number"],
            "unit_type": a["unit_type"],
            "amount": a["amount"],
            "last_error": a.get("last_error"),
        }
        for a in attention
    ]
    summary = {
        "transferred_checked": len(transferred),
        "completed": len(completed),
        "errors": len(errors),
        "needs_attention": len(needs_attention),
    }
    logger.info(
        "reconcile run transferred_checked=%s completed=%s errors=%s needs_attention=%s",
        summary["transferred_checked"],
        summary["completed"],
        summary["errors"],
        summary["needs_attention"],
    )
    return {
        "summary": summary,
        "completed": completed,
        "errors": errors,
        "needs_attention": needs_attention,
    }
