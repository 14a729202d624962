"""players and squares tables

Revision ID: 0001_players_squares
Revises:
Create Date: 2026-09-28

"""

from alembic import op

revision = "0001_players_squares"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute(
        """
    CREATE EXTENSION IF NOT EXISTS pgcrypto;

    CREATE TABLE IF NOT EXISTS players (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      name TEXT NOT NULL,
      slug TEXT NOT NULL UNIQUE,
      owner_email TEXT NULL,
      goal_cents INTEGER NOT NULL DEFAULT 10000 CHECK (goal_cents >= 0),
      total_raised_cents BIGINT NOT NULL DEFAULT 0 CHECK (total_raised_cents >= 0),
      is_active BOOLEAN NOT NULL DEFAULT true,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );

    CREATE TABLE IF NOT EXISTS squares (
      id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
      player_id UUID NOT NULL REFERENCES players(id) ON DELETE CASCADE,
      position_x INTEGER NOT NULL,
      position_y INTEGER NOT NULL,
      value_cents INTEGER NOT NULL CHECK (value_cents > 0),
      is_purchased BOOLEAN NOT NULL DEFAULT false,
      donor_name TEXT NULL,
      is_anonymous BOOLEAN NOT NULL DEFAULT false,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      purchased_at TIMESTAMPTZ NULL,
      CONSTRAINT uq_squares_player_position UNIQUE (player_id, position_x, position_y)
    );

    CREATE INDEX IF NOT EXISTS idx_squares_player ON squares(player_id, is_purchased);
    """
    )


def downgrade():
    op.execute(
        """
    DROP TABLE IF EXISTS squares;
    DROP TABLE IF EXISTS players;
    """
    )
