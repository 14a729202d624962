from typing import Any, Iterable
from psycopg2.extras import execute_values
from app.utils.db import get_db_connection

SQUARE_COLS = [
    "id",
    "player_id",
    "position_x",
    "position_y",
    "value_cents",
    "is_purchased",
    "donor_name",
    "is_anonymous",
    "purchased_at",
]
_SELECT = f"SELECT {', '.join(SQUARE_COLS)} FROM squares"


def list_squares_for_player(player_id: str) -> list[dict[str, Any]]:
    sql = f"{_SELECT} WHERE player_id = %s ORDER BY position_y, position_x"
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql, (player_id,))
        return [dict(zip(SQUARE_COLS, r)) for r in cur.fetchall()]


def get_squares(
    cur, square_ids: list[str], *, for_update: bool = False
) -> list[dict[str, Any]]:
    if not square_ids:
        return []
    sql = f"{_SELECT} WHERE id = ANY(%s::uuid[]) ORDER BY id"
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (list(square_ids),))
    return [dict(zip(SQUARE_COLS, r)) for r in cur.fetchall()]


def lock_squares_for_player(cur, player_id: str) -> list[dict[str, Any]]:
    sql = f"{_SELECT} WHERE player_id = %s ORDER BY id FOR UPDATE"
    cur.execute(sql, (player_id,))
    return [dict(zip(SQUARE_COLS, r)) for r in cur.fetchall()]


def insert_squares(
    cur, player_id: str, cells: Iterable[tuple[int, int, int]]
) -> int:
    """cells: (position_x, position_y, value_cents)"""
    rows = [(player_id, x, y, value) for x, y, value in cells]
    execute_values(
        cur,
        "INSERT INTO squares (player_id, position_x, position_y, value_cents) VALUES %s",
        rows,
    )
    return len(rows)


def update_unpurchased_values(cur, values: dict[str, int]) -> int:
    """Set value_cents per square id; purchased squares are never touched."""
    if not values:
        return 0
    sql = """
    UPDATE squares AS s
       SET value_cents = v.value_cents
      FROM (VALUES %s) AS v(id, value_cents)
     WHERE s.id = v.id::uuid
       AND s.is_purchased = false
    """
    execute_values(cur, sql, list(values.items()))
    return cur.rowcount


def mark_squares_purchased(
    cur,
    square_ids: list[str],
    *,
    donor_name: str | None,
    is_anonymous: bool,
) -> list[str]:
    """
    Conditional flip guarded by is_purchased = false. Returns the ids that
    actually changed; a square sold by a concurrent request is simply absent.
    """
    if not square_ids:
        return []
    sql = """
    UPDATE squares
       SET is_purchased = true,
           donor_name = %s,
           is_anonymous = %s,
           purchased_at = now()
     WHERE id = ANY(%s::uuid[])
       AND is_purchased = false
    RETURNING id
    """
    cur.execute(
        sql,
        (None if is_anonymous else donor_name, is_anonymous, list(square_ids)),
    )
    return [str(r[0]) for r in cur.fetchall()]


def release_squares(cur, square_ids: list[str]) -> list[str]:
    """
    Revert purchased squares that have no succeeded donation behind them and
    clear their donor display fields.
    """
    if not square_ids:
        return []
    sql = """
    UPDATE squares AS s
       SET is_purchased = false,
           donor_name = NULL,
           is_anonymous = false,
           purchased_at = NULL
     WHERE s.id = ANY(%s::uuid[])
       AND s.is_purchased = true
       AND NOT EXISTS (
             SELECT 1 FROM donations d
              WHERE d.square_id = s.id AND d.status = 'succeeded'
           )
    RETURNING s.id
    """
    cur.execute(sql, (list(square_ids),))
    return [str(r[0]) for r in cur.fetchall()]
