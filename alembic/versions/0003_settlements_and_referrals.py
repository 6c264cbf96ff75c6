"""settlement attempts, payouts, referral earnings and withdrawals

Revision ID: 0003_settlements_and_referrals
Revises: 0002_credentials_and_markers
Create Date: 2026-02-02 00:20:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0003_settlements_and_referrals"
down_revision = "0002_credentials_and_markers"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.settlement_attempts (
          id bigserial PRIMARY KEY,
          unit_type text NOT NULL
            CHECK (unit_type IN ('invoice', 'milestone', 'dispute_seller', 'dispute_refund')),
          unit_ref text NOT NULL,
          invoice_id uuid NOT NULL REFERENCES app.invoices(id),
          invoice_number text NOT NULL,
          status text NOT NULL DEFAULT 'CLAIMED'
            CHECK (status IN ('CLAIMED', 'TRANSFERRED', 'SETTLED', 'TRANSFER_FAILED', 'TRANSFER_UNKNOWN', 'RETRYING')),
          amount bigint NOT NULL CHECK (amount > 0),
          recipient_phone text NOT NULL,
          external_reference text NOT NULL,
          plan jsonb NOT NULL,
          gateway_reference text,
          last_error text,
          attempt_count integer NOT NULL DEFAULT 0,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now(),
          UNIQUE (unit_type, unit_ref)
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS settlement_attempts_status_idx
          ON app.settlement_attempts (status, updated_at);
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payouts (
          id bigserial PRIMARY KEY,
          settlement_id bigint NOT NULL UNIQUE REFERENCES app.settlement_attempts(id),
          user_id uuid REFERENCES app.users(id),
          recipient_phone text NOT NULL,
          amount bigint NOT NULL CHECK (amount > 0),
          method text NOT NULL,
          status text NOT NULL,
          invoice_id uuid NOT NULL REFERENCES app.invoices(id),
          invoice_number text NOT NULL,
          milestone_id bigint REFERENCES app.invoice_milestones(id),
          gateway_reference text,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION app.forbid_payout_mutation() RETURNS trigger AS $$
        BEGIN
          RAISE EXCEPTION 'DB_ERROR: PAYOUT_IMMUTABLE';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS payouts_append_only ON app.payouts;
        CREATE TRIGGER payouts_append_only
          BEFORE UPDATE OR DELETE ON app.payouts
          FOR EACH ROW EXECUTE FUNCTION app.forbid_payout_mutation();
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.referral_earnings (
          id bigserial PRIMARY KEY,
          referrer_id uuid NOT NULL REFERENCES app.users(id),
          referred_id uuid NOT NULL REFERENCES app.users(id),
          source_ref text NOT NULL UNIQUE,
          gross_amount bigint NOT NULL,
          earned_amount bigint NOT NULL CHECK (earned_amount >= 0),
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.referral_withdrawals (
          id bigserial PRIMARY KEY,
          user_id uuid NOT NULL REFERENCES app.users(id),
          amount bigint NOT NULL CHECK (amount > 0),
          momo_number text NOT NULL,
          status text NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid', 'failed')),
          gateway_reference text,
          last_error text,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS referral_withdrawals_one_pending
          ON app.referral_withdrawals (user_id) WHERE status = 'pending';
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.referral_withdrawals;")
    op.execute("DROP TABLE IF EXISTS app.referral_earnings;")
    op.execute("DROP TABLE IF EXISTS app.payouts;")
    op.execute("DROP FUNCTION IF EXISTS app.forbid_payout_mutation();")
    op.execute("DROP TABLE IF EXISTS app.settlement_attempts;")
