# app/ledger/settlements.py
from __future__ import annotations

import json
from typing import Any, Optional, Sequence
from uuid import UUID

from psycopg2.extras import Json, RealDictCursor


_ATTEMPT_COLUMNS = """
  id, unit_type, unit_ref, invoice_id, invoice_number, status, amount,
  recipient_phone, external_reference, plan, gateway_reference, last_error,
  attempt_count, created_at, updated_at
"""


def _row(row) -> dict | None:
    if not row:
        return None
    out = dict(row)
    # jsonb comes back decoded; tolerate text for older rows
    if isinstance(out.get("plan"), str):
        out["plan"] = json.loads(out["plan"])
    return out


# ==========================================================
# Settlement attempts
# ==========================================================

def open_attempt(
    conn,
    *,
    unit_type: str,
    unit_ref: str,
    invoice_id: UUID,
    invoice_number: str,
    amount: int,
    recipient_phone: str,
    external_reference: str,
    plan: dict[str, Any],
) -> dict:
    """
    Written in the same transaction as the unit's claim, so a claimed unit
    always has exactly one attempt row.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            INSERT INTO app.settlement_attempts (
              unit_type, unit_ref, invoice_id, invoice_number, status,
              amount, recipient_phone, external_reference, plan
            )
            VALUES (%s, %s, %s, %s, 'CLAIMED', %s, %s, %s, %s)
            RETURNING {_ATTEMPT_COLUMNS}
            """,
            (
                unit_type,
                unit_ref,
                invoice_id,
                invoice_number,
                int(amount),
                recipient_phone,
                external_reference,
                Json(plan),
            ),
        )
        return _row(cur.fetchone())


def get_attempt(conn, *, attempt_id: int) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_ATTEMPT_COLUMNS} FROM app.settlement_attempts WHERE id = %s",
            (attempt_id,),
        )
        return _row(cur.fetchone())


def mark_attempt(
    conn,
    *,
    attempt_id: int,
    new_status: str,
    from_status: str,
    gateway_reference: Optional[str] = None,
    last_error: Optional[str] = None,
    count_attempt: bool = False,
) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.settlement_attempts
        SET
          status = %s,
          gateway_reference = COALESCE(%s, gateway_reference),
          last_error = %s,
          attempt_count = attempt_count + CASE WHEN %s THEN 1 ELSE 0 END,
          updated_at = now()
        WHERE id = %s
          AND status = %s
        """,
        (new_status, gateway_reference, last_error, count_attempt, attempt_id, from_status),
    )
    return cur.rowcount == 1


def list_attempts(
    conn,
    *,
    statuses: Sequence[str],
    older_than_minutes: int = 0,
    limit: int = 100,
) -> list[dict[str, Any]]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_ATTEMPT_COLUMNS}
            FROM app.settlement_attempts
            WHERE status = ANY(%s)
              AND updated_at <= now() - (%s || ' minutes')::interval
            ORDER BY updated_at
            LIMIT %s
            """,
            (list(statuses), int(older_than_minutes), int(limit)),
        )
        return [_row(r) for r in cur.fetchall()]


# ==========================================================
# Payouts (append-only)
# ==========================================================

def insert_payout(
    conn,
    *,
    settlement_id: int,
    user_id: Optional[UUID],
    recipient_phone: str,
    amount: int,
    method: str,
    status: str,
    invoice_id: UUID,
    invoice_number: str,
    milestone_id: Optional[int] = None,
    gateway_reference: Optional[str] = None,
) -> bool:
    """
    Keyed by settlement attempt, so replaying bookkeeping never adds a second row.
    """
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.payouts (
          settlement_id, user_id, recipient_phone, amount, method, status,
          invoice_id, invoice_number, milestone_id, gateway_reference
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (settlement_id) DO NOTHING
        """,
        (
            settlement_id,
            user_id,
            recipient_phone,
            int(amount),
            method,
            status,
            invoice_id,
            invoice_number,
            milestone_id,
            gateway_reference,
        ),
    )
    return cur.rowcount == 1
