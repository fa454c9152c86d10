"""Flask application factory for the waste reporting and rewards service."""
import atexit
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException

from utils.ai_vision import init_vision
from utils.errors import WasteRewardsError
from utils.logger import init_logging
from utils.security import apply_security_headers
from extensions import csrf, db, migrate, login_manager


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(WasteRewardsError)
    def domain_error(error):
        level = app.logger.error if error.status_code >= 500 else app.logger.warning
        level(
            "Request rejected",
            extra={"path": request.path, "error": str(error), "kind": type(error).__name__},
        )
        return jsonify({"error": str(error), "kind": type(error).__name__}), error.status_code

    @app.errorhandler(HTTPException)
    def http_error(error):
        if error.code and error.code >= 500:
            app.logger.error("HTTP error", extra={"path": request.path, "status": error.code})
        return jsonify({"error": error.description, "kind": error.name}), error.code

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # For file-backed SQLite just make sure the parent directory exists.
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


def create_app(config_name: Optional[str] = None, vision_client=None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

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

    os.makedirs(app.instance_path, exist_ok=True)
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    logger = init_logging(app)
    app.logger = logger

    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required"}), 401

    # Process-scoped AI client: built once here, handed to the lifecycle by the routes.
    vision = init_vision(app, vision_client)
    atexit.register(vision.close)

    from routes import auth_bp, main_bp, notifications_bp, reports_bp, rewards_bp

    for blueprint in (auth_bp, reports_bp, rewards_bp, notifications_bp):
        csrf.exempt(blueprint)
    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(reports_bp)
    app.register_blueprint(rewards_bp)
    app.register_blueprint(notifications_bp)

    @app.cli.command("ledger-reconcile")
    def ledger_reconcile():
        """Rewrite reward records that drifted from the transaction ledger."""
        from utils.rewards import reconcile_all

        corrected = reconcile_all()
        app.logger.info("Ledger reconciliation finished", extra={"corrected": corrected})
        click.echo(f"Corrected {corrected} reward record(s)")

    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        from utils.rewards import ensure_default_reward_catalog

        db.create_all()
        ensure_default_reward_catalog()

    return app


# Expose the Flask application for WSGI servers (e.g., gunicorn app:app).
app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", 5000))
    app.run(host="0.0.0.0", port=port, use_reloader=False)
