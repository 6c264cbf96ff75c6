# routes/admin_settlements.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.escrow.state_machine import AttemptStatus
from app.ledger import settlements
from app.settlement import engine
from app.settlement.reconcile import run_reconcile
from db import get_conn
from deps.admin import require_admin
from deps.auth import CurrentUser
from schemas import AttemptListOut

router = APIRouter(prefix="/admin/settlements", tags=["admin"])

DEFAULT_STATUSES = [
    AttemptStatus.CLAIMED.value,
    AttemptStatus.TRANSFERRED.value,
    AttemptStatus.TRANSFER_FAILED.value,
    AttemptStatus.TRANSFER_UNKNOWN.value,
    AttemptStatus.RETRYING.value,
]


@router.get("", response_model=AttemptListOut)
def list_settlements(
    status: Optional[List[AttemptStatus]] = Query(default=None),
    older_than_minutes: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    _admin: CurrentUser = Depends(require_admin),
):
    statuses = [s.value for s in status] if status else DEFAULT_STATUSES
    with get_conn() as conn:
        rows = settlements.list_attempts(
            conn,
            statuses=statuses,
            older_than_minutes=older_than_minutes,
            limit=limit,
        )
    return {"attempts": rows}


@router.post("/{attempt_id}/retry")
def retry_settlement(attempt_id: int, _admin: CurrentUser = Depends(require_admin)):
    outcome = engine.retry_settlement(attempt_id)
    return {"ok": True, "settlement": outcome.to_dict()}


@router.post("/{attempt_id}/complete")
def complete_settlement(attempt_id: int, _admin: CurrentUser = Depends(require_admin)):
    outcome = engine.complete_settlement(attempt_id)
    return {"ok": True, "settlement": outcome.to_dict()}


@router.post("/reconcile")
def reconcile_now(
    stale_minutes: int = Query(default=5, ge=0),
    _admin: CurrentUser = Depends(require_admin),
):
    return run_reconcile(stale_minutes=stale_minutes)
