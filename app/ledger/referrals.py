# app/ledger/referrals.py
from __future__ import annotations

from typing import Optional
from uuid import UUID

from psycopg2.extras import RealDictCursor


# ==========================================================
# Earnings
# ==========================================================

def insert_referral_earning(
    conn,
    *,
    referrer_id: UUID,
    referred_id: UUID,
    source_ref: str,
    gross_amount: int,
    earned_amount: int,
) -> bool:
    """
    True only for the first insert per source_ref (invoice number or
    invoice-milestone key). Callers credit the balance only on True.
    """
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app.referral_earnings (referrer_id, referred_id, source_ref, gross_amount, earned_amount)
        VALUES (%s, %s, %s, %s, %s)
        ON CONFLICT (source_ref) DO NOTHING
        RETURNING id
        """,
        (referrer_id, referred_id, source_ref, int(gross_amount), int(earned_amount)),
    )
    return cur.fetchone() is not None


def increment_referral_balance(conn, *, user_id: UUID, amount: int) -> None:
    cur = conn.cursor()
    cur.execute(
        "UPDATE app.users SET referral_balance = referral_balance + %s WHERE id = %s",
        (int(amount), user_id),
    )


# ==========================================================
# Withdrawals
# ==========================================================

def deduct_referral_balance(conn, *, user_id: UUID, amount: int) -> Optional[int]:
    """
    Single conditional update: enough balance and no withdrawal in flight.
    Returns the new balance, or None when the deduction was refused.
    """
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.users
        SET referral_balance = referral_balance - %s
        WHERE id = %s
          AND referral_balance >= %s
          AND NOT EXISTS (
            SELECT 1 FROM app.referral_withdrawals w
            WHERE w.user_id = %s AND w.status = 'pending'
          )
        RETURNING referral_balance
        """,
        (int(amount), user_id, int(amount), user_id),
    )
    row = cur.fetchone()
    return int(row[0]) if row else None


def insert_withdrawal(conn, *, user_id: UUID, amount: int, momo_number: str) -> dict:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            INSERT INTO app.referral_withdrawals (user_id, amount, momo_number)
            VALUES (%s, %s, %s)
            RETURNING id, user_id, amount, momo_number, status, created_at
            """,
            (user_id, int(amount), momo_number),
        )
        return dict(cur.fetchone())


def mark_withdrawal(
    conn,
    *,
    withdrawal_id: int,
    new_status: str,
    gateway_reference: Optional[str] = None,
    last_error: Optional[str] = None,
) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE app.referral_withdrawals
        SET status = %s, gateway_reference = %s, last_error = %s, updated_at = now()
        WHERE id = %s AND status = 'pending'
        """,
        (new_status, gateway_reference, last_error, withdrawal_id),
    )
    return cur.rowcount == 1


def list_withdrawals(conn, *, user_id: UUID) -> list[dict]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT id, amount, momo_number, status, gateway_reference, created_at
            FROM app.referral_withdrawals
            WHERE user_id = %s
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        return [dict(r) for r in cur.fetchall()]


def has_pending_withdrawal(conn, *, user_id: UUID) -> bool:
    cur = conn.cursor()
    cur.execute(
        "SELECT 1 FROM app.referral_withdrawals WHERE user_id = %s AND status = 'pending' LIMIT 1",
        (user_id,),
    )
    return cur.fetchone() is not None


# ==========================================================
# Dashboard
# ==========================================================

def get_referral_account(conn, *, user_id: UUID) -> dict | None:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id, referral_code, referral_balance FROM app.users WHERE id = %s",
            (user_id,),
        )
        row = cur.fetchone()
        return dict(row) if row else None


def list_referral_earnings(conn, *, referrer_id: UUID) -> list[dict]:
    with conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            """
            SELECT e.id, e.source_ref, e.gross_amount, e.earned_amount, e.created_at,
                   u.name AS referred_user_name
            FROM app.referral_earnings e
            JOIN app.users u ON u.id = e.referred_id
            WHERE e.referrer_id = %s
            ORDER BY e.created_at DESC
            """,
            (referrer_id,),
        )
        return [dict(r) for r in cur.fetchall()]
