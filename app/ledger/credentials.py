# app/ledger/credentials.py
from __future__ import annotations

from uuid import UUID

from psycopg2.extras import RealDictCursor


_CODE_COLUMNS = "id, invoice_id, seller_id, code, verification_token, is_used, used_at, created_at"


def get_confirmation_code(conn, *, invoice_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_CODE_COLUMNS} FROM app.confirmation_codes WHERE invoice_id = %s",
            (invoice_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_confirmation_by_token(conn, *, verification_token: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_CODE_COLUMNS} FROM app.confirmation_codes WHERE verification_token = %s",
            (verification_token,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def has_confirmation_code(conn, *, invoice_id: UUID) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM app.confirmation_codes WHERE invoice_id = %s LIMIT 1", (invoice_id,))
    return cur.fetchone() is not None


def insert_confirmation_code(
    conn,
    *,
    invoice_id: UUID,
    seller_id: UUID,
    code: str,
    verification_token: str,
) -> dict | None:
    """
    None means the short code collided with an existing one; the caller
    regenerates. A second credential for the same invoice is an integrity
    error, not a collision.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            INSERT INTO app.confirmation_codes (invoice_id, seller_id, code, verification_token)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (code) DO NOTHING
            RETURNING {_CODE_COLUMNS}
            """,
            (invoice_id, seller_id, code, verification_token),
        )
        row = cur.fetchone()
        return dict(row) if row else None


# ==========================================================
# Atomic claims
# ==========================================================

def claim_confirmation_code(conn, *, code_id: int) -> dict | None:
    """
    is_used false -> true. At most one caller gets a row back.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            UPDATE app.confirmation_codes
            SET is_used = true, used_at = now()
            WHERE id = %s AND is_used = false
            RETURNING id, invoice_id, seller_id
            """,
            (code_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def claim_milestone_release(conn, *, milestone_id: int) -> dict | None:
    """
    completed -> released, clearing the single-use token in the same statement.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            UPDATE app.invoice_milestones
            SET status = 'released', released_at = now(),
                spent_release_token = release_token, release_token = NULL
            WHERE id = %s AND status = 'completed'
            RETURNING id, invoice_id, invoice_number, milestone_number, label, amount
            """,
            (milestone_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None
