"""escrow baseline: users, invoices, milestones, payments, guests

Revision ID: 0001_escrow_baseline
Revises:
Create Date: 2026-02-02 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_escrow_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.users (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          email text NOT NULL UNIQUE,
          name text,
          phone text,
          role text NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
          referral_code text UNIQUE,
          referred_by uuid REFERENCES app.users(id),
          referral_balance bigint NOT NULL DEFAULT 0 CHECK (referral_balance >= 0),
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.invoices (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          invoice_number text NOT NULL UNIQUE,
          seller_id uuid NOT NULL REFERENCES app.users(id),
          name text NOT NULL,
          description text,
          amount bigint NOT NULL CHECK (amount > 0),
          currency text NOT NULL DEFAULT 'XAF',
          status text NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'paid', 'delivered', 'completed', 'expired', 'refunded')),
          payment_type text NOT NULL DEFAULT 'full' CHECK (payment_type IN ('full', 'installment')),
          created_at timestamptz NOT NULL DEFAULT now(),
          expires_at timestamptz,
          delivered_at timestamptz,
          completed_at timestamptz
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.invoice_milestones (
          id bigserial PRIMARY KEY,
          invoice_id uuid NOT NULL REFERENCES app.invoices(id) ON DELETE CASCADE,
          invoice_number text NOT NULL,
          milestone_number integer NOT NULL CHECK (milestone_number > 0),
          label text NOT NULL,
          amount bigint NOT NULL CHECK (amount > 0),
          deadline date,
          status text NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'completed', 'released', 'disputed')),
          release_token text UNIQUE,
          -- last consumed token, kept so a reused link reports "already released"
          spent_release_token text UNIQUE,
          completed_at timestamptz,
          released_at timestamptz,
          created_at timestamptz NOT NULL DEFAULT now(),
          UNIQUE (invoice_id, milestone_number)
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payments (
          id bigserial PRIMARY KEY,
          invoice_id uuid NOT NULL REFERENCES app.invoices(id),
          provider text NOT NULL,
          payment_ref text NOT NULL UNIQUE,
          gateway_reference text,
          amount bigint NOT NULL CHECK (amount > 0),
          currency text NOT NULL DEFAULT 'XAF',
          status text NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid', 'failed')),
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    # Several attempts per invoice, at most one of them paid.
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS payments_one_paid_per_invoice
          ON app.payments (invoice_id) WHERE status = 'paid';
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.guests (
          id bigserial PRIMARY KEY,
          email text NOT NULL,
          momo_number text,
          user_id uuid,
          invoice_number text NOT NULL,
          chat_token text UNIQUE,
          created_at timestamptz NOT NULL DEFAULT now(),
          UNIQUE (email, invoice_number)
        );
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.guests;")
    op.execute("DROP TABLE IF EXISTS app.payments;")
    op.execute("DROP TABLE IF EXISTS app.invoice_milestones;")
    op.execute("DROP TABLE IF EXISTS app.invoices;")
    op.execute("DROP TABLE IF EXISTS app.users;")
