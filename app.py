"""Flask application factory for the CHW visit integrity service."""
import json
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from utils.errors import DomainError
from utils.logger import init_logging
from utils.security import apply_security_headers
from extensions import csrf, db, migrate, login_manager


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(DomainError)
    def domain_error(error):
        app.logger.info(
            "Domain error",
            extra={"path": request.path, "code": error.code, "status": error.status_code},
        )
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        if error.code == 403:
            app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        code = (error.name or "error").lower().replace(" ", "_")
        return jsonify({"error": error.description, "code": code}), error.code

    @app.errorhandler(Exception)
    def internal_error(error):
        db.session.rollback()
        app.logger.exception("500 Internal Server Error", extra={"path": request.path})
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default super admin can log in."""
    from models import ROLE_PERMISSIONS, SUPER_ADMIN_ROLE, AdminUser, Role  # Local import to avoid circular dependency

    descriptions = {
        SUPER_ADMIN_ROLE: "Full access including system configuration",
        "admin": "Programme administrator",
        "supervisor": "Field supervisor reviewing visits and fraud",
        "analyst": "Read-only dashboards and analytics",
    }
    roles = {}
    for name, permissions in ROLE_PERMISSIONS.items():
        role = Role.get_or_create(name, description=descriptions.get(name, ""), permissions=permissions)
        if set(role.permissions or ()) != set(permissions):
            role.permissions = list(permissions)
            db.session.commit()
        roles[name] = role

    username = (app.config.get("DEFAULT_ADMIN_USERNAME") or "").strip()
    email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not username or not email or not password:
        return

    admin = AdminUser.query.filter_by(username=username).first()
    if admin:
        if admin.role != roles[SUPER_ADMIN_ROLE] or not admin.is_active:
            admin.role = roles[SUPER_ADMIN_ROLE]
            admin.is_active = True
            db.session.commit()
        return

    admin = AdminUser(
        username=username,
        email=email,
        full_name="System Administrator",
        role=roles[SUPER_ADMIN_ROLE],
        is_active=True,
    )
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # For SQLite just make sure the parent directory exists.
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def register_commands(app: Flask) -> None:
    @app.cli.command("seed-roles")
    def seed_roles():
        """Create the RBAC roles and the default super admin."""
        ensure_default_roles_and_admin(app)
        click.echo("Roles and default admin ensured.")

    @app.cli.command("anomaly-scan")
    def anomaly_scan():
        """Run the fraud anomaly scan once and print the summary (schedule via cron)."""
        from utils.anomaly_engine import run_anomaly_scan

        result = run_anomaly_scan(app.config)
        click.echo(json.dumps({"summary": result["summary"], "failed_rules": result["failed_rules"]}))

    @app.cli.command("purge-otps")
    def purge_otps():
        """Delete expired feedback OTP entries (schedule via cron)."""
        from utils.otp_store import get_otp_store

        removed = get_otp_store().purge_expired()
        app.logger.info("Expired OTPs purged", extra={"removed": removed})
        click.echo(f"Purged {removed} expired OTP entries.")


def create_app(config_name: Optional[str] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])

    # Optional instance-specific overrides
    if not app.config.get("TESTING"):
        app.config.from_pyfile("config.py", silent=True)
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import CHW, AdminUser  # Local import to avoid circular dependency

        if not user_id or ":" not in user_id:
            return None
        kind, _, raw_id = user_id.partition(":")
        model = {"chw": CHW, "admin": AdminUser}.get(kind)
        if model is None:
            return None
        return db.session.get(model, raw_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required", "code": "unauthorized"}), 401

    # Blueprints
    from routes import admin_bp, auth_bp, chws_bp, feedback_bp, main_bp, patients_bp, visits_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(patients_bp)
    app.register_blueprint(chws_bp)
    app.register_blueprint(visits_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(feedback_bp)

    register_error_handlers(app)
    register_commands(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
