"""audit_logs and settings tables

Revision ID: 0004_audit_logs_settings
Revises: 0003_webhook_events
Create Date: 2026-10-02

"""

from alembic import op

revision = "0004_audit_logs_settings"
down_revision = "0003_webhook_events"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_logs (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          event_type TEXT NOT NULL,
          player_id UUID NULL REFERENCES players(id) ON DELETE SET NULL,
          donation_id UUID NULL REFERENCES donations(id) ON DELETE SET NULL,
          details JSONB NULL,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        CREATE INDEX IF NOT EXISTS idx_audit_logs_player ON audit_logs(player_id, created_at);

        CREATE TABLE IF NOT EXISTS settings (
          id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
          key TEXT NOT NULL UNIQUE,
          value TEXT NOT NULL,
          category TEXT NOT NULL DEFAULT 'app',
          is_secret BOOLEAN NOT NULL DEFAULT false,
          created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
          updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """
    )


def downgrade() -> None:
    op.execute(
        """
        DROP TABLE IF EXISTS settings;
        DROP TABLE IF EXISTS audit_logs;
        """
    )
