"""scheduled job claim tables and platform settings

Revision ID: 0005_job_claims_and_platform_settings
Revises: 0004_disputes_and_chats
Create Date: 2026-02-02 00:40:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0005_job_claims_and_platform_settings"
down_revision = "0004_disputes_and_chats"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.invoice_reminders (
          id bigserial PRIMARY KEY,
          invoice_number text NOT NULL,
          reminder_level integer NOT NULL,
          sent_at timestamptz NOT NULL DEFAULT now(),
          UNIQUE (invoice_number, reminder_level)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.dispute_escalations (
          id bigserial PRIMARY KEY,
          invoice_number text NOT NULL,
          level integer NOT NULL,
          sent_at timestamptz NOT NULL DEFAULT now(),
          UNIQUE (invoice_number, level)
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.platform_settings (
          key text PRIMARY KEY,
          value text NOT NULL,
          updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        INSERT INTO app.platform_settings (key, value)
        VALUES ('maintenance_mode', 'false'),
               ('payments_blocked', 'false'),
               ('payouts_blocked', 'false')
        ON CONFLICT (key) DO NOTHING;
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.platform_settings;")
    op.execute("DROP TABLE IF EXISTS app.dispute_escalations;")
    op.execute("DROP TABLE IF EXISTS app.invoice_reminders;")
