"""confirmation codes and processed-payment markers

Revision ID: 0002_credentials_and_markers
Revises: 0001_escrow_baseline
Create Date: 2026-02-02 00:10:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_credentials_and_markers"
down_revision = "0001_escrow_baseline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.confirmation_codes (
          id bigserial PRIMARY KEY,
          invoice_id uuid NOT NULL UNIQUE REFERENCES app.invoices(id),
          seller_id uuid NOT NULL REFERENCES app.users(id),
          code text NOT NULL UNIQUE,
          verification_token text NOT NULL UNIQUE,
          is_used boolean NOT NULL DEFAULT false,
          used_at timestamptz,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.processed_payments (
          payment_ref text PRIMARY KEY,
          processed_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    # Markers and used credentials are permanent.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION app.forbid_marker_delete() RETURNS trigger AS $$
        BEGIN
          RAISE EXCEPTION 'DB_ERROR: MARKER_PERMANENT';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS processed_payments_no_delete ON app.processed_payments;
        CREATE TRIGGER processed_payments_no_delete
          BEFORE DELETE OR UPDATE ON app.processed_payments
          FOR EACH ROW EXECUTE FUNCTION app.forbid_marker_delete();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION app.forbid_credential_reuse() RETURNS trigger AS $$
        BEGIN
          IF OLD.is_used AND NOT NEW.is_used THEN
            RAISE EXCEPTION 'DB_ERROR: CREDENTIAL_ALREADY_USED';
          END IF;
          RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        DROP TRIGGER IF EXISTS confirmation_codes_single_use ON app.confirmation_codes;
        CREATE TRIGGER confirmation_codes_single_use
          BEFORE UPDATE ON app.confirmation_codes
          FOR EACH ROW EXECUTE FUNCTION app.forbid_credential_reuse();
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.processed_payments;")
    op.execute("DROP TABLE IF EXISTS app.confirmation_codes;")
    op.execute("DROP FUNCTION IF EXISTS app.forbid_marker_delete();")
    op.execute("DROP FUNCTION IF EXISTS app.forbid_credential_reuse();")
