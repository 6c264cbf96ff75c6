# app/ledger/invoices.py
from __future__ import annotations

from typing import Any, Optional, Sequence
from uuid import UUID

from psycopg2.extras import RealDictCursor


_INVOICE_COLUMNS = """
  i.id, i.invoice_number, i.seller_id, i.name, i.description, i.amount, i.currency,
  i.status, i.payment_type, i.created_at, i.expires_at, i.delivered_at, i.completed_at
"""


# ==========================================================
# Invoices
# ==========================================================

def get_invoice(conn, *, invoice_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_INVOICE_COLUMNS} FROM app.invoices i WHERE i.id = %s",
            (invoice_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_invoice_by_number(conn, *, invoice_number: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_INVOICE_COLUMNS} FROM app.invoices i WHERE i.invoice_number = %s",
            (invoice_number,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def update_invoice_status(
    conn,
    *,
    invoice_id: UUID,
    new_status: str,
    from_statuses: Sequence[str],
) -> bool:
    """
    Compare-and-set on status. Timestamps follow the target state.
    Returns False when the invoice was not in any of `from_statuses`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.invoices
        SET
          status = %s,
          delivered_at = CASE WHEN %s = 'delivered' THEN now() ELSE delivered_at END,
          completed_at = CASE WHEN %s IN ('completed', 'refunded') THEN now() ELSE completed_at END
        WHERE id = %s
          AND status = ANY(%s)
        """,
        (new_status, new_status, new_status, invoice_id, list(from_statuses)),
    )
    return cur.rowcount == 1


# ==========================================================
# Milestones
# ==========================================================

_MILESTONE_COLUMNS = """
  m.id, m.invoice_id, m.invoice_number, m.milestone_number, m.label, m.amount,
  m.deadline, m.status, m.release_token, m.completed_at, m.released_at
"""


def get_milestone(conn, *, invoice_id: UUID, milestone_number: int) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_MILESTONE_COLUMNS}
            FROM app.invoice_milestones m
            WHERE m.invoice_id = %s AND m.milestone_number = %s
            """,
            (invoice_id, milestone_number),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_milestone_by_token(conn, *, release_token: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_MILESTONE_COLUMNS}
            FROM app.invoice_milestones m
            WHERE m.release_token = %s OR m.spent_release_token = %s
            """,
            (release_token, release_token),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_milestones(conn, *, invoice_id: UUID, for_update: bool = False) -> list[dict[str, Any]]:
    """`for_update` waits for in-flight milestone claims and reads their outcome."""
    lock = "FOR UPDATE" if for_update else ""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_MILESTONE_COLUMNS}
            FROM app.invoice_milestones m
            WHERE m.invoice_id = %s
            ORDER BY m.milestone_number
            {lock}
            """,
            (invoice_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def mark_milestone_completed(conn, *, milestone_id: int, release_token: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.invoice_milestones
        SET status = 'completed', completed_at = now(), release_token = %s
        WHERE id = %s AND status = 'pending'
        """,
        (release_token, milestone_id),
    )
    return cur.rowcount == 1


def count_unreleased_milestones(conn, *, invoice_id: UUID) -> int:
    cur = conn.cursor()
    cur.execute(
        "SELECT count(*) FROM app.invoice_milestones WHERE invoice_id = %s AND status <> 'released'",
        (invoice_id,),
    )
    return int(cur.fetchone()[0])


# ==========================================================
# Parties
# ==========================================================

def get_user(conn, *, user_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, email, name, phone, role, referred_by, referral_balance
            FROM app.users
            WHERE id = %s
            """,
            (user_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_guest(conn, *, invoice_number: str) -> dict | None:
    """Latest buyer record for the invoice (the most recent payment attempt)."""
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, email, momo_number, user_id, invoice_number, chat_token, created_at
            FROM app.guests
            WHERE invoice_number = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (invoice_number,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def upsert_guest(
    conn,
    *,
    email: str,
    momo_number: str,
    invoice_number: str,
    user_id: Optional[UUID] = None,
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.guests (email, momo_number, user_id, invoice_number)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (email, invoice_number)
        DO UPDATE SET momo_number = EXCLUDED.momo_number,
                      user_id = EXCLUDED.user_id
        """,
        (email, momo_number, user_id, invoice_number),
    )


def set_guest_chat_token(conn, *, guest_id: int, chat_token: str) -> None:
    cur = conn.cursor()
    cur.execute(
        "UPDATE app.guests SET chat_token = %s WHERE id = %s",
        (chat_token, guest_id),
    )


def guest_has_chat_token(conn, *, invoice_number: str, chat_token: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM app.guests WHERE invoice_number = %s AND chat_token = %s LIMIT 1",
        (invoice_number, chat_token),
    )
    return cur.fetchone() is not None
