from __future__ import annotations

import os
import sqlite3

from flask import Flask, jsonify
from flask_login import current_user, login_required

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .errors import ServiceError
from .extensions import db, migrate, login_manager, csrf


@event.listens_for(Engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    if isinstance(dbapi_connection, sqlite3.Connection):
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA busy_timeout=30000")
        cur.close()


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object("config.Config")
    if test_config:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)

    uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if uri.startswith("sqlite:"):
        opts = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS", {}))
        ca = dict(opts.get("connect_args", {}))
        ca.setdefault("check_same_thread", False)
        ca.setdefault("timeout", 30)
        opts["connect_args"] = ca
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = opts

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)

    from .models.user import User  # noqa: F401
    from .models.request import ServiceRequest  # noqa: F401
    from .models.application import Application  # noqa: F401
    from .models.review import Review  # noqa: F401
    from .models.payment import Payment  # noqa: F401
    from .models.notification import Notification  # noqa: F401

    from .notifications.service import DatabaseNotificationSink
    from .payments.processor import StripeProcessor

    app.extensions.setdefault("homecare.notifier", DatabaseNotificationSink())
    app.extensions.setdefault(
        "homecare.payment_processor", StripeProcessor(app.config.get("STRIPE_SECRET_KEY", ""))
    )

    from .auth.routes import auth_bp
    app.register_blueprint(auth_bp, url_prefix="/api/auth")

    from .lifecycle.routes import requests_bp
    app.register_blueprint(requests_bp, url_prefix="/api")

    from .payments.routes import payments_bp, webhooks_bp
    app.register_blueprint(payments_bp, url_prefix="/api/payments")
    app.register_blueprint(webhooks_bp, url_prefix="/api/webhooks")
    csrf.exempt(webhooks_bp)

    from .reviews.routes import reviews_bp
    app.register_blueprint(reviews_bp, url_prefix="/api/reviews")

    from .notifications.routes import notifications_bp
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")

    from .admin.routes import admin_bp
    app.register_blueprint(admin_bp, url_prefix="/api/admin")

    from .cli import (
        init_db_cmd,
        reset_db_cmd,
        purge_data_cmd,
        seed_demo_cmd,
        cleanup_notifications_cmd,
    )

    app.cli.add_command(init_db_cmd)
    app.cli.add_command(reset_db_cmd)
    app.cli.add_command(purge_data_cmd)
    app.cli.add_command(seed_demo_cmd)
    app.cli.add_command(cleanup_notifications_cmd)

    @app.get("/")
    def index():
        return jsonify(service="homecare", status="ok")

    @app.get("/api/dashboard")
    @login_required
    def dashboard():
        from .lifecycle.engine import get_engine

        return jsonify(success=True, data=get_engine().dashboard(current_user))

    @app.errorhandler(ServiceError)
    def _service_error(exc: ServiceError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.teardown_request
    def _teardown_request(_exc):
        try:
            if _exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    return app
