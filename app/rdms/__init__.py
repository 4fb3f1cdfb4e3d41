import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from app.rdms.config import load_config
from app.rdms.db import init_db, missing_tables, teardown_db_session
from app.rdms import models  # noqa: F401  (registers every table on Base.metadata)
from app.rdms.errors import RequestError
from app.rdms.storage import StorageError, storage_from_config
from app.rdms.routes import bp as routes_bp
from app.rdms.auth import bp as auth_bp, load_current_user
from app.rdms.admin import bp as admin_bp
from app.rdms.modules.items.admin import bp as items_bp
from app.rdms.modules.change_requests.admin import bp as change_requests_bp
from app.rdms.modules.history.admin import bp as history_bp
from app.rdms.modules.qc_documents.admin import bp as qc_documents_bp
from app.rdms.modules.notifications.admin import bp as notifications_bp

logger = logging.getLogger(__name__)

_EXEMPT_PREFIXES = ("/static/", "/health", "/healthz")
REQUIRED_TABLES = (
    "users",
    "audit_events",
    "projects",
    "items",
    "item_relations",
    "change_requests",
    "item_histories",
    "qc_document_approvals",
    "qc_revision_requests",
    "notifications",
)


def _error(code: str, message: str, status: int):
    return jsonify({"ok": False, "error": {"code": code, "message": message}}), status


def _rollback_request_session() -> None:
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.rdms.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_EXEMPT_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout establish or drop the session itself
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return _error("CSRF_FAILED", "CSRF token missing or invalid.", 400)
        return None

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    # QC documents are optional output: a broken backend is logged, not fatal.
    try:
        storage_from_config(app.config).verify()
        app.logger.info("Storage health check passed (%s)", app.config.get("STORAGE_BACKEND"))
    except StorageError as e:
        app.logger.error("STORAGE CONFIG ERROR: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(items_bp, url_prefix="/api")
    app.register_blueprint(change_requests_bp, url_prefix="/api")
    app.register_blueprint(history_bp, url_prefix="/api")
    app.register_blueprint(qc_documents_bp, url_prefix="/api")
    app.register_blueprint(notifications_bp, url_prefix="/api")

    # Schema drift check, run once on the first real request.
    app.config.setdefault("_schema_health_ok", None)
    app.config.setdefault("_schema_health_missing", [])

    @app.before_request
    def _schema_health_guardrail():
        if request.path.startswith(_EXEMPT_PREFIXES):
            return None
        if app.config.get("_schema_health_ok") is None:
            missing: list[str] = []
            try:
                missing = missing_tables(app.extensions["sqlalchemy_engine"], REQUIRED_TABLES)
            except Exception as e:
                app.logger.exception("Schema health check failed: %s", e)
            app.config["_schema_health_missing"] = missing
            app.config["_schema_health_ok"] = not missing
            if missing:
                app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        if not app.config.get("_schema_health_ok"):
            # Re-check on the next request once migrations have run.
            app.config["_schema_health_ok"] = None
            return _error("SCHEMA_OUT_OF_DATE", "Database schema is out of date.", 503)
        return None

    def _load_user_wrapper():
        if request.path.startswith(_EXEMPT_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(RequestError)
    def _request_error(e: RequestError):
        _rollback_request_session()
        if e.http_status == 403:
            app.logger.warning("Forbidden (%s): %s request_id=%s", e.code, e.message, getattr(g, "request_id", None))
        return _error(e.code, e.message, e.http_status)

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        _rollback_request_session()
        return _error(e.name.upper().replace(" ", "_"), e.description or e.name, e.code or 500)

    @app.errorhandler(500)
    def _err_500(e):
        _rollback_request_session()
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _error("INTERNAL_ERROR", "Internal server error.", 500)

    logger.info("create_app() complete; app ready to serve")
    return app
