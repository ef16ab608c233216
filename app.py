from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import timedelta

from flask import Flask, current_app, jsonify
from flask_cors import CORS
from sqlalchemy import event
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from extensions import db, limiter
from errors import SuiteCError

# Models must be imported before create_all().
import models_activity  # noqa: F401
import models_assets  # noqa: F401
import models_courses  # noqa: F401
from activities_api import activities_api
from assets_api import assets_api


def _configure_logging():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _enable_sqlite_savepoints(engine):
    """Have SQLAlchemy emit BEGIN instead of pysqlite so SAVEPOINTs nest inside the outer transaction."""

    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


def _database_url() -> str:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        if os.getenv("FLASK_ENV") == "production":
            raise RuntimeError("DATABASE_URL missing in production; refusing to use SQLite.")
        db_url = "sqlite:///suitec.db"
    # Heroku/Render style URLs use the legacy scheme.
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def create_app(config: dict | None = None) -> Flask:
    _configure_logging()
    app = Flask(__name__)

    secret_key = os.getenv("SECRET_KEY") or "dev-secret-key-change-me"
    if os.getenv("FLASK_ENV") == "production" and secret_key.startswith("dev-secret-key-change"):
        raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")
    app.config["SECRET_KEY"] = secret_key

    app.config["SESSION_COOKIE_HTTPONLY"] = True
    # LTI tools are framed by the LMS, so the session cookie must survive cross-site requests.
    app.config["SESSION_COOKIE_SAMESITE"] = os.getenv("SESSION_COOKIE_SAMESITE", "None")
    app.config["SESSION_COOKIE_SECURE"] = os.getenv("FLASK_ENV") == "production"
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(os.getenv("SESSION_LIFETIME_HOURS", "8")))

    app.config["SQLALCHEMY_DATABASE_URI"] = _database_url()
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
        "pool_recycle": 300,
        "pool_pre_ping": True,
    }
    app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1") == "1"

    if config:
        app.config.update(config)

    if os.getenv("FLASK_ENV") == "production":
        # Trust a single proxy hop in front of the app.
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": os.getenv("CORS_ORIGINS", "*")}}, supports_credentials=True)
    limiter.init_app(app)

    app.register_blueprint(activities_api)
    app.register_blueprint(assets_api)

    @app.errorhandler(SuiteCError)
    def handle_suitec_error(err: SuiteCError):
        if err.code >= 500:
            current_app.logger.error("Request failed: %s", err.message)
        return jsonify({"success": False, "code": err.code, "error": err.message}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(err: Exception):
        if isinstance(err, HTTPException):
            return jsonify({"success": False, "code": err.code, "error": err.description}), err.code
        db.session.rollback()
        current_app.logger.exception("Unhandled error")
        return jsonify({"success": False, "code": 500, "error": "Internal server error"}), 500

    @app.get("/api/status")
    def status():
        return jsonify({"ok": True})

    with app.app_context():
        if db.engine.url.get_backend_name() == "sqlite":
            _enable_sqlite_savepoints(db.engine)
        db.create_all()

    return app


if __name__ == "__main__":
    app = create_app()
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_ENV", "development") == "development"
    app.run(host="0.0.0.0", port=port, debug=debug)
