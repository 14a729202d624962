import os
from flask import Flask, jsonify
from dotenv import load_dotenv
from flask_jwt_extended import JWTManager
from datetime import timedelta
import structlog

from app.errors import AppError
from app.routes import payment_bp, webhooks_bp, players_bp, receipt_bp, admin_bp
from app.realtime import init_socketio
from app.services.config_service import ConfigService
from app.utils.logging import configure_logging

load_dotenv(dotenv_path=".env")

log = structlog.get_logger(__name__)


def create_app(config_service=None):
    configure_logging()

    app = Flask(__name__)
    app.url_map.strict_slashes = False

    # JWT (admin endpoints)
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET", "dev-secret")
    app.config["JWT_TOKEN_LOCATION"] = ["headers"]
    app.config["JWT_HEADER_NAME"] = "Authorization"
    app.config["JWT_HEADER_TYPE"] = "Bearer"
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(minutes=15)
    JWTManager(app)

    app.extensions["config_service"] = config_service or ConfigService()

    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        if e.status_code >= 500:
            log.warning("request.provider_error", error=e.message, status=e.status_code)
        return jsonify(e.to_dict()), e.status_code

    @app.get("/__ping")
    def __ping():
        return {"ok": True}, 200

    app.register_blueprint(payment_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(players_bp)
    app.register_blueprint(receipt_bp)
    app.register_blueprint(admin_bp)

    init_socketio(app)
    return app
