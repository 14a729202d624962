from typing import Any
from app.utils.db import get_db_connection

PLAYER_COLS = [
    "id",
    "name",
    "slug",
    "owner_email",
    "goal_cents",
    "total_raised_cents",
    "is_active",
    "created_at",
    "updated_at",
]
_SELECT = f"SELECT {', '.join(PLAYER_COLS)} FROM players"


def get_player(player_id: str) -> dict[str, Any] | None:
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(f"{_SELECT} WHERE id = %s", (player_id,))
        row = cur.fetchone()
        if not row:
            return None
        return dict(zip(PLAYER_COLS, row))


def get_player_by_slug(slug: str) -> dict[str, Any] | None:
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(f"{_SELECT} WHERE slug = %s", (slug,))
        row = cur.fetchone()
        if not row:
            return None
        return dict(zip(PLAYER_COLS, row))


def lock_player(cur, player_id: str) -> dict[str, Any] | None:
    """Row-lock the player for the rest of the caller's transaction."""
    cur.execute(f"{_SELECT} WHERE id = %s FOR UPDATE", (player_id,))
    row = cur.fetchone()
    if not row:
        return None
    return dict(zip(PLAYER_COLS, row))


def insert_player(
    cur,
    *,
    name: str,
    slug: str,
    goal_cents: int,
    owner_email: str | None = None,
) -> dict[str, Any]:
    sql = f"""
    INSERT INTO players (name, slug, goal_cents, owner_email)
    VALUES (%s, %s, %s, %s)
    RETURNING {', '.join(PLAYER_COLS)}
    """
    cur.execute(sql, (name, slug, goal_cents, owner_email))
    return dict(zip(PLAYER_COLS, cur.fetchone()))


def slug_exists(cur, slug: str) -> bool:
    cur.execute("SELECT 1 FROM players WHERE slug = %s LIMIT 1", (slug,))
    return cur.fetchone() is not None


def increment_total_raised(
    cur, player_id: str, amount_cents: int
) -> tuple[int, int, int] | None:
    """
    Single-statement increment. Returns (previous_cents, new_cents, goal_cents)
    or None when the player does not exist.
    """
    sql = """
    UPDATE players
       SET total_raised_cents = total_raised_cents + %s,
           updated_at = now()
     WHERE id = %s
    RETURNING total_raised_cents - %s, total_raised_cents, goal_cents
    """
    cur.execute(sql, (amount_cents, player_id, amount_cents))
    row = cur.fetchone()
    if not row:
        return None
    return (int(row[0]), int(row[1]), int(row[2]))


def list_player_ids(*, active_only: bool = True) -> list[str]:
    sql = "SELECT id FROM players"
    if active_only:
        sql += " WHERE is_active"
    sql += " ORDER BY created_at, id"
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql)
        return [str(r[0]) for r in cur.fetchall()]
