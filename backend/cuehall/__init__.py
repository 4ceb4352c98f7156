# backend/cuehall/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


# Staff bearer auth plus the signed device headers
ALLOWED_REQUEST_HEADERS = (
    "Authorization",
    "Content-Type",
    "X-Device-Id",
    "X-Device-Token",
    "X-Timestamp",
    "X-Nonce",
    "X-Signature",
)


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Models must be imported before Alembic or create_all reads the metadata
    from . import models  # noqa: F401

    # Light-test timers need the app object to push their own context
    from .services.table_testing_service import TableTestingCoordinator
    app.extensions["table_testing"] = TableTestingCoordinator(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.tables import tables_bp
    from .routes.billing import billing_bp
    from .routes.iot import iot_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(tables_bp)
    app.register_blueprint(billing_bp)
    app.register_blueprint(iot_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin in app.config["CORS_ALLOWED_ORIGINS"]:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = ", ".join(ALLOWED_REQUEST_HEADERS)
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
