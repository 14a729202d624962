from flask import Blueprint, jsonify

from app.models.donation import receipt_rows
from app.utils.money import format_cents

receipt_bp = Blueprint("receipt", __name__, url_prefix="/api/receipt")


def _iso(ts):
    return ts.isoformat() if ts else None


@receipt_bp.get("/<payment_id>")
def receipt(payment_id):
    """
    Donor receipt for one checkout, looked up by the provider payment id the
    purchase response returned. The donor email is never echoed back.
    """
    payment_id = payment_id.strip()
    rows = receipt_rows(payment_id) if payment_id else []
    if not rows:
        return jsonify({"error": "receipt not found"}), 404

    first = rows[0]
    total = sum(int(d["amount_cents"]) for d in rows)
    settled = all(d["status"] == "succeeded" for d in rows)
    completed = [d["completed_at"] for d in rows if d["completed_at"]]
    return jsonify({
        "paymentId": payment_id,
        "provider": first["payment_provider"],
        "status": "succeeded" if settled else "pending",
        "donorName": None if first["is_anonymous"] else first["donor_name"],
        "isAnonymous": bool(first["is_anonymous"]),
        "player": {
            "id": first["player_id"],
            "name": first["player_name"],
            "slug": first["player_slug"],
        },
        "totalCents": total,
        "totalAmount": format_cents(total),
        "squareCount": sum(1 for d in rows if d["square_id"]),
        "squares": [
            {
                "id": d["square_id"],
                "x": d["position_x"],
                "y": d["position_y"],
                "valueCents": int(d["amount_cents"]),
                "value": format_cents(d["amount_cents"]),
            }
            for d in rows
            if d["square_id"]
        ],
        "createdAt": _iso(first["created_at"]),
        "completedAt": _iso(max(completed)) if settled and completed else None,
    }), 200
