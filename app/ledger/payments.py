# app/ledger/payments.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from psycopg2.extras import RealDictCursor


_PAYMENT_COLUMNS = """
  id, invoice_id, provider, payment_ref, gateway_reference, amount, currency,
  status, created_at, updated_at
"""


def insert_payment(
    conn,
    *,
    invoice_id: UUID,
    provider: str,
    payment_ref: str,
    amount: int,
    currency: str,
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.payments (invoice_id, provider, payment_ref, amount, currency)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (invoice_id, provider, payment_ref, int(amount), currency),
    )


def set_gateway_reference(conn, *, payment_ref: str, gateway_reference: str) -> None:
    cur = conn.cursor()
    cur.execute(
        "UPDATE app.payments SET gateway_reference = %s, updated_at = now() WHERE payment_ref = %s",
        (gateway_reference, payment_ref),
    )


def get_payment_by_ref(conn, *, payment_ref: str) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"SELECT {_PAYMENT_COLUMNS} FROM app.payments WHERE payment_ref = %s",
            (payment_ref,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def get_latest_payment(conn, *, invoice_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            f"""
            SELECT {_PAYMENT_COLUMNS}
            FROM app.payments
            WHERE invoice_id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (invoice_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def has_paid_payment(conn, *, invoice_id: UUID) -> bool:
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM app.payments WHERE invoice_id = %s AND status = 'paid' LIMIT 1",
        (invoice_id,),
    )
    return cur.fetchone() is not None


def mark_payment_paid(conn, *, payment_id: int) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.payments
        SET status = 'paid', updated_at = now()
        WHERE id = %s AND status = 'pending'
        """,
        (payment_id,),
    )
    return cur.rowcount == 1


def claim_processed_payment(conn, *, payment_ref: str) -> bool:
    """
    The idempotency marker. True only for the first caller ever.
    """
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.processed_payments (payment_ref)
        VALUES (%s)
        ON CONFLICT (payment_ref) DO NOTHING
        """,
        (payment_ref,),
    )
    return cur.rowcount == 1


# ==========================================================
# Chats
# ==========================================================

def open_chat(conn, *, invoice_id: UUID, invoice_number: str) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.chats (invoice_id, invoice_number)
        VALUES (%s, %s)
        ON CONFLICT (invoice_id) DO NOTHING
        """,
        (invoice_id, invoice_number),
    )


def insert_chat_message(conn, *, invoice_id: UUID, sender_type: str, body: str) -> Optional[int]:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.chat_messages (chat_id, sender_type, body)
        SELECT c.id, %s, %s FROM app.chats c WHERE c.invoice_id = %s
        RETURNING id
        """,
        (sender_type, body, invoice_id),
    )
    row = cur.fetchone()
    return int(row[0]) if row else None


def list_chat_messages(conn, *, invoice_id: UUID) -> list[dict]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT m.id, m.sender_type, m.body, m.created_at
            FROM app.chat_messages m
            JOIN app.chats c ON c.id = m.chat_id
            WHERE c.invoice_id = %s
            ORDER BY m.created_at, m.id
            """,
            (invoice_id,),
        )
        return [dict(r) for r in cur.fetchall()]
