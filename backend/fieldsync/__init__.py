# backend/fieldsync/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Per-record write serialization shared by all request threads
    from .services.concurrency import RecordLockRegistry
    app.extensions["fieldsync_record_locks"] = RecordLockRegistry(app.config["SYNC_LOCK_STRIPES"])

    # Register blueprints
    from .routes.sync import sync_bp

    app.register_blueprint(sync_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
