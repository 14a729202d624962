from typing import Any
from app.utils.db import get_db_connection

DONATION_COLS = [
    "id",
    "player_id",
    "square_id",
    "amount_cents",
    "donor_name",
    "donor_email",
    "is_anonymous",
    "payment_provider",
    "provider_payment_id",
    "provider_order_id",
    "status",
    "created_at",
    "completed_at",
]
_RETURNING = ", ".join(DONATION_COLS)

TERMINAL_STATUSES = ("succeeded", "failed", "cancelled")


def _rows(cur) -> list[dict[str, Any]]:
    out = []
    for r in cur.fetchall():
        d = dict(zip(DONATION_COLS, r))
        d["id"] = str(d["id"])
        d["player_id"] = str(d["player_id"])
        if d["square_id"] is not None:
            d["square_id"] = str(d["square_id"])
        out.append(d)
    return out


def insert_donations(cur, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Insert one donation per row dict. A succeeded row that collides with an
    existing succeeded (provider, payment id, square) triple is skipped, so
    the returned list only holds rows that were actually written.
    """
    inserted: list[dict[str, Any]] = []
    sql = f"""
    INSERT INTO donations (
        player_id, square_id, amount_cents, donor_name, donor_email, is_anonymous,
        payment_provider, provider_payment_id, provider_order_id,
        manual_payment_method, notes, status, completed_at
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
            CASE WHEN %s = 'pending' THEN NULL ELSE now() END)
    ON CONFLICT (payment_provider, provider_payment_id, square_id)
        WHERE status = 'succeeded' DO NOTHING
    RETURNING {_RETURNING}
    """
    for row in rows:
        status = row.get("status", "pending")
        cur.execute(
            sql,
            (
                row["player_id"],
                row.get("square_id"),
                row["amount_cents"],
                row.get("donor_name"),
                row.get("donor_email"),
                bool(row.get("is_anonymous")),
                row["payment_provider"],
                row.get("provider_payment_id"),
                row.get("provider_order_id"),
                row.get("manual_payment_method"),
                row.get("notes"),
                status,
                status,
            ),
        )
        inserted.extend(_rows(cur))
    return inserted


def list_donations_for_payment(
    cur, provider: str, payment_id: str, *, for_update: bool = True
) -> list[dict[str, Any]]:
    sql = f"""
    SELECT {_RETURNING} FROM donations
     WHERE payment_provider = %s AND provider_payment_id = %s
     ORDER BY created_at, id
    """
    if for_update:
        sql += " FOR UPDATE"
    cur.execute(sql, (provider, payment_id))
    return _rows(cur)


def complete_pending_donations(
    cur, donation_ids: list[str], *, provider_order_id: str | None = None
) -> list[dict[str, Any]]:
    """pending -> succeeded. Rows already terminal are left alone."""
    if not donation_ids:
        return []
    sql = f"""
    UPDATE donations
       SET status = 'succeeded',
           completed_at = now(),
           provider_order_id = COALESCE(provider_order_id, %s)
     WHERE id = ANY(%s::uuid[])
       AND status = 'pending'
    RETURNING {_RETURNING}
    """
    cur.execute(sql, (provider_order_id, list(donation_ids)))
    return _rows(cur)


def set_pending_status_for_payment(
    cur, provider: str, payment_id: str, status: str
) -> list[dict[str, Any]]:
    """pending -> failed | cancelled for every row of one payment."""
    if status not in ("failed", "cancelled"):
        raise ValueError(f"invalid terminal status for pending rows: {status}")
    sql = f"""
    UPDATE donations
       SET status = %s, completed_at = now()
     WHERE payment_provider = %s
       AND provider_payment_id = %s
       AND status = 'pending'
    RETURNING {_RETURNING}
    """
    cur.execute(sql, (status, provider, payment_id))
    return _rows(cur)


def cancel_pending_for_squares(cur, square_ids: list[str]) -> list[dict[str, Any]]:
    if not square_ids:
        return []
    sql = f"""
    UPDATE donations
       SET status = 'cancelled', completed_at = now()
     WHERE square_id = ANY(%s::uuid[])
       AND status = 'pending'
    RETURNING {_RETURNING}
    """
    cur.execute(sql, (list(square_ids),))
    return _rows(cur)


def recent_succeeded_for_player(player_id: str, limit: int = 10) -> list[dict]:
    sql = """
      SELECT id, donor_name, is_anonymous, amount_cents, completed_at
      FROM donations
      WHERE player_id = %s AND status = 'succeeded'
      ORDER BY completed_at DESC NULLS LAST
      LIMIT %s
    """
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql, (player_id, limit))
        out = []
        for did, name, anonymous, cents, ts in cur.fetchall():
            out.append(
                {
                    "id": str(did),
                    "donor": None if anonymous else name,
                    "amount_cents": int(cents),
                    "amount": round(int(cents) / 100.0, 2),
                    "completed_at": ts.isoformat() if ts else None,
                }
            )
        return out


RECEIPT_COLS = [
    "id",
    "player_id",
    "square_id",
    "amount_cents",
    "donor_name",
    "is_anonymous",
    "payment_provider",
    "status",
    "created_at",
    "completed_at",
    "player_name",
    "player_slug",
    "position_x",
    "position_y",
]


def receipt_rows(payment_id: str) -> list[dict[str, Any]]:
    """
    Live donations under one provider payment id, each with its player and
    the square it paid for. Failed and cancelled rows are left out.
    """
    sql = """
      SELECT d.id, d.player_id, d.square_id, d.amount_cents, d.donor_name,
             d.is_anonymous, d.payment_provider, d.status, d.created_at,
             d.completed_at, p.name, p.slug, s.position_x, s.position_y
      FROM donations d
      JOIN players p ON p.id = d.player_id
      LEFT JOIN squares s ON s.id = d.square_id
      WHERE d.provider_payment_id = %s AND d.status IN ('succeeded', 'pending')
      ORDER BY d.created_at, d.id
    """
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute(sql, (payment_id,))
        out = []
        for r in cur.fetchall():
            d = dict(zip(RECEIPT_COLS, r))
            d["id"] = str(d["id"])
            d["player_id"] = str(d["player_id"])
            if d["square_id"] is not None:
                d["square_id"] = str(d["square_id"])
            out.append(d)
        return out
