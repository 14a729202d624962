from .payment_routes import payment_bp
from .webhook_routes import webhooks_bp
from .player_routes import players_bp
from .receipt_routes import receipt_bp
from .admin_routes import admin_bp

__all__ = ["payment_bp", "webhooks_bp", "players_bp", "receipt_bp", "admin_bp"]
