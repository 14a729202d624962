from typing import Any
from psycopg2.extras import Json
from app.utils.db import get_db_connection


def insert_audit_event(
    *,
    event_type: str,
    player_id: str | None = None,
    donation_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    sql = """
    INSERT INTO audit_logs (event_type, player_id, donation_id, details)
    VALUES (%s, %s, %s, %s)
    """
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(
            sql,
            (event_type, player_id, donation_id, Json(details) if details else None),
        )
        conn.commit()


def list_audit_events(player_id: str, limit: int = 50) -> list[dict[str, Any]]:
    sql = """
      SELECT id, event_type, donation_id, details, created_at
      FROM audit_logs
      WHERE player_id = %s
      ORDER BY created_at DESC
      LIMIT %s
    """
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql, (player_id, limit))
        cols = ["id", "event_type", "donation_id", "details", "created_at"]
        return [dict(zip(cols, r)) for r in cur.fetchall()]
