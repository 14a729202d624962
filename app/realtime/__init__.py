import os
import structlog
from flask_socketio import SocketIO, join_room, leave_room, emit
from flask import request

from app.models.player import get_player

log = structlog.get_logger(__name__)

_raw = os.getenv("SOCKETIO_CORS_ORIGINS", "*").strip()
CORS_ORIGINS = "*" if _raw == "*" else [o.strip() for o in _raw.split(",") if o.strip()]

socketio = SocketIO(
    cors_allowed_origins=CORS_ORIGINS,
    async_mode=os.getenv("SOCKETIO_ASYNC_MODE", "eventlet"),
)


def player_room(player_id: str) -> str:
    return f"player:{player_id}"


def progress_snapshot(player: dict) -> dict:
    """Same totals the `donation` event carries, so a client can start from it."""
    return {
        "player_id": str(player["id"]),
        "total_raised_cents": int(player["total_raised_cents"]),
        "goal_cents": int(player["goal_cents"]),
    }


def init_socketio(app):
    socketio.init_app(app)

    @socketio.on("connect")
    def handle_connect():
        log.debug("socket.connect", origin=request.headers.get("Origin"))
        emit("connected", {"ok": True})

    @socketio.on("join_player")
    def on_join(data):
        pid = (data or {}).get("player_id")
        if not pid:
            emit("error", {"error": "player_id required"})
            return
        player = get_player(str(pid))
        if not player or not player.get("is_active", True):
            emit("error", {"error": "player not found"})
            return
        room = player_room(str(player["id"]))
        join_room(room)
        emit("joined", {"room": room, "progress": progress_snapshot(player)})

    @socketio.on("leave_player")
    def on_leave(data):
        pid = (data or {}).get("player_id")
        if not pid:
            return
        room = player_room(pid)
        leave_room(room)
        emit("left", {"room": room})
