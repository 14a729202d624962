from typing import Any
from psycopg2.extras import Json


def record_webhook_event(
    cur, provider: str, event_id: str, event_type: str, raw_event: dict[str, Any]
) -> bool:
    """
    Insert a row into webhook_events inside the caller's transaction.
    Returns True if inserted, False if this exact event was already applied.
    A rolled-back reconciliation also rolls back the row, so the provider's
    retry is processed again.
    """
    sql = """
    INSERT INTO webhook_events (provider, event_id, type, raw)
    VALUES (%s, %s, %s, %s)
    ON CONFLICT (provider, event_id) DO NOTHING
    RETURNING event_id
    """
    cur.execute(sql, (provider, event_id, event_type, Json(raw_event)))
    return cur.fetchone() is not None
