# app/ledger/jobs.py
from __future__ import annotations

from typing import Any

from psycopg2.extras import RealDictCursor


def list_reminder_candidates(conn) -> list[dict[str, Any]]:
    """
    Unpaid, unexpired invoices with at least one buyer payment attempt.
    The reminder clock starts at the latest attempt, not at invoice creation.
    """
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT DISTINCT ON (g.invoice_number)
                   g.invoice_number,
                   g.email AS buyer_email,
                   g.created_at AS attempt_at,
                   i.name AS invoice_name,
                   i.amount,
                   i.currency
            FROM app.guests g
            JOIN app.invoices i ON i.invoice_number = g.invoice_number
            WHERE i.status = 'pending'
              AND (i.expires_at IS NULL OR i.expires_at > now())
            ORDER BY g.invoice_number, g.created_at DESC
            """
        )
        return [dict(r) for r in cur.fetchall()]


def claim_reminder(conn, *, invoice_number: str, level: int) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.invoice_reminders (invoice_number, reminder_level)
        VALUES (%s, %s)
        ON CONFLICT (invoice_number, reminder_level) DO NOTHING
        RETURNING id
        """,
        (invoice_number, level),
    )
    return cur.fetchone() is not None


def release_reminder(conn, *, invoice_number: str, level: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "DELETE FROM app.invoice_reminders WHERE invoice_number = %s AND reminder_level = %s",
        (invoice_number, level),
    )


def claim_escalation(conn, *, invoice_number: str, level: int) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.dispute_escalations (invoice_number, level)
        VALUES (%s, %s)
        ON CONFLICT (invoice_number, level) DO NOTHING
        RETURNING id
        """,
        (invoice_number, level),
    )
    return cur.fetchone() is not None


def release_escalation(conn, *, invoice_number: str, level: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "DELETE FROM app.dispute_escalations WHERE invoice_number = %s AND level = %s",
        (invoice_number, level),
    )
