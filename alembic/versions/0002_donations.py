"""donations table with succeeded-payment idempotency index

Revision ID: 0002_donations
Revises: 0001_players_squares
Create Date: 2026-09-28

"""

from alembic import op

revision = "0002_donations"
down_revision = "0001_players_squares"
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
    DO $$
    BEGIN
      IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = 'donation_status') THEN
        CREATE TYPE donation_status AS ENUM ('pending','succeeded','failed','cancelled');
      END IF;
    END$$;

    CREATE TABLE IF NOT EXISTS donations (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
      square_id UUID NULL REFERENCES squares(id) ON DELETE SET NULL,
      amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
      donor_name TEXT NULL,
      donor_email TEXT NULL,
      is_anonymous BOOLEAN NOT NULL DEFAULT false,
      payment_provider TEXT NOT NULL,
      provider_payment_id TEXT NULL,
      provider_order_id TEXT NULL,
      manual_payment_method TEXT NULL,
      notes TEXT NULL,
      status donation_status NOT NULL DEFAULT 'pending',
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      completed_at TIMESTAMPTZ NULL
    );

    CREATE UNIQUE INDEX IF NOT EXISTS uq_donations_succeeded_payment_square
      ON donations(payment_provider, provider_payment_id, square_id)
      WHERE status = 'succeeded';

    CREATE INDEX IF NOT EXISTS idx_donations_payment ON donations(payment_provider, provider_payment_id);
    CREATE INDEX IF NOT EXISTS idx_donations_player  ON donations(player_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_donations_square  ON donations(square_id, status);
    """
    )


def downgrade():
    op.execute(
        """
    DROP TABLE IF EXISTS donations;
    DO $$
    BEGIN
      IF EXISTS (SELECT 1 FROM pg_type WHERE typname = 'donation_status') THEN
        DROP TYPE donation_status;
      END IF;
    END$$;
    """
    )
