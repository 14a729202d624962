from typing import Any
from app.utils.db import get_db_connection


def get_setting(key: str) -> str | None:
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute("SELECT value FROM settings WHERE key = %s", (key,))
        row = cur.fetchone()
        return row[0] if row else None


def list_settings(category: str | None = None) -> list[dict[str, Any]]:
    sql = "SELECT key, value, category, is_secret, updated_at FROM settings"
    params: tuple = ()
    if category:
        sql += " WHERE category = %s"
        params = (category,)
    sql += " ORDER BY key"
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql, params)
        cols = ["key", "value", "category", "is_secret", "updated_at"]
        return [dict(zip(cols, r)) for r in cur.fetchall()]


def upsert_settings(items: list[dict[str, Any]]) -> int:
    """items: {key, value, category?, is_secret?}"""
    sql = """
    INSERT INTO settings (key, value, category, is_secret)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (key) DO UPDATE
       SET value = EXCLUDED.value,
           category = EXCLUDED.category,
           is_secret = EXCLUDED.is_secret,
           updated_at = now()
    """
    with get_db_connection() as conn, conn.cursor() as cur:
        for item in items:
            cur.execute(
                sql,
                (
                    item["key"],
                    str(item["value"]),
                    item.get("category") or "app",
                    bool(item.get("is_secret")),
                ),
            )
        conn.commit()
        return len(items)
