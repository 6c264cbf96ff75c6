"""disputes, chats and in-app notifications

Revision ID: 0004_disputes_and_chats
Revises: 0003_settlements_and_referrals
Create Date: 2026-02-02 00:30:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0004_disputes_and_chats"
down_revision = "0003_settlements_and_referrals"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.disputes (
          id bigserial PRIMARY KEY,
          invoice_id uuid NOT NULL UNIQUE REFERENCES app.invoices(id),
          invoice_number text NOT NULL,
          opened_by text NOT NULL CHECK (opened_by IN ('buyer', 'seller')),
          reason text NOT NULL,
          admin_token text NOT NULL UNIQUE,
          status text NOT NULL DEFAULT 'open'
            CHECK (status IN ('open', 'resolved_seller', 'resolved_buyer')),
          resolution_note text,
          created_at timestamptz NOT NULL DEFAULT now(),
          resolved_at timestamptz
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.chats (
          id bigserial PRIMARY KEY,
          invoice_id uuid NOT NULL UNIQUE REFERENCES app.invoices(id),
          invoice_number text NOT NULL,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.chat_messages (
          id bigserial PRIMARY KEY,
          chat_id bigint NOT NULL REFERENCES app.chats(id) ON DELETE CASCADE,
          sender_type text NOT NULL CHECK (sender_type IN ('buyer', 'seller', 'admin', 'system')),
          body text NOT NULL,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.notifications (
          id bigserial PRIMARY KEY,
          user_id uuid NOT NULL REFERENCES app.users(id),
          type text NOT NULL,
          title text NOT NULL,
          body text NOT NULL,
          data jsonb NOT NULL DEFAULT '{}'::jsonb,
          is_read boolean NOT NULL DEFAULT false,
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.notifications;")
    op.execute("DROP TABLE IF EXISTS app.chat_messages;")
    op.execute("DROP TABLE IF EXISTS app.chats;")
    op.execute("DROP TABLE IF EXISTS app.disputes;")
