"""Blueprint registration and service-level routes."""
from datetime import datetime

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from extensions import db
from utils.ledger_anchor import sink_configured
from utils.sms_service import gateway_configured
from .admin import admin_bp
from .auth import auth_bp
from .chws import chws_bp
from .feedback import feedback_bp
from .patients import patients_bp
from .visits import visits_bp

main_bp = Blueprint("main", __name__)


@main_bp.route("/api/health", methods=["GET"])
def health():
    try:
        db.session.execute(text("SELECT 1"))
        database = "connected"
    except Exception as exc:
        current_app.logger.warning("Health check database probe failed", extra={"error": str(exc)})
        db.session.rollback()
        database = "unavailable"
    return jsonify(
        {
            "status": "OK" if database == "connected" else "DEGRADED",
            "timestamp": datetime.utcnow().isoformat(),
            "database": database,
            "ledger": "configured" if sink_configured() else "disabled",
            "sms": "configured" if gateway_configured() else "disabled",
        }
    ), (200 if database == "connected" else 503)


__all__ = ["main_bp", "auth_bp", "patients_bp", "chws_bp", "visits_bp", "admin_bp", "feedback_bp"]
