# app/ledger/disputes.py
from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from psycopg2.extras import RealDictCursor


_DISPUTE_COLUMNS = """
  id, invoice_id, invoice_number, opened_by, reason, admin_token, status,
  resolution_note, created_at, resolved_at
"""


def get_dispute_for_invoice(conn, *, invoice_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_DISPUTE_COLUMNS} FROM app.disputes WHERE invoice_id = %s",
            (invoice_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_dispute_by_token(conn, *, admin_token: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_DISPUTE_COLUMNS} FROM app.disputes WHERE admin_token = %s",
            (admin_token,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def insert_dispute(
    conn,
    *,
    invoice_id: UUID,
    invoice_number: str,
    opened_by: str,
    reason: str,
    admin_token: str,
) -> dict | None:
    """None when the invoice already has a dispute (unique on invoice_id)."""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            INSERT INTO app.disputes (invoice_id, invoice_number, opened_by, reason, admin_token)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (invoice_id) DO NOTHING
            RETURNING {_DISPUTE_COLUMNS}
            """,
            (invoice_id, invoice_number, opened_by, reason, admin_token),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def claim_dispute_resolution(
    conn,
    *,
    dispute_id: int,
    new_status: str,
    resolution_note: Optional[str] = None,
) -> dict | None:
    """
    open -> resolved_*. The dispute row itself is the claim for the
    admin-authorized settlement path.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            UPDATE app.disputes
            SET status = %s, resolution_note = %s, resolved_at = now()
            WHERE id = %s AND status = 'open'
            RETURNING {_DISPUTE_COLUMNS}
            """,
            (new_status, resolution_note, dispute_id),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_open_disputes(conn) -> list[dict[str, Any]]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT d.id, d.invoice_number, d.opened_by, d.reason, d.admin_token, d.created_at,
                   i.name AS invoice_name, i.amount, i.currency
            FROM app.disputes d
            JOIN app.invoices i ON i.id = d.invoice_id
            WHERE d.status = 'open'
            ORDER BY d.created_at
            """
        )
        return [dict(r) for r in cur.fetchall()]
