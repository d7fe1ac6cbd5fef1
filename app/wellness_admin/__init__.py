import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect
from werkzeug.middleware.proxy_fix import ProxyFix

from app.wellness_admin.auth import PUBLIC_ENDPOINTS, bp as auth_bp, load_current_user, policy_block_reason
from app.wellness_admin.config import load_config
from app.wellness_admin.db import init_db, teardown_db_session
from app.wellness_admin.docstore import DocumentNotFound, DocumentStoreError
from app.wellness_admin.mailer import MailerError
from app.wellness_admin.push import PushError
from app.wellness_admin.routes import bp as routes_bp
from app.wellness_admin.storage import StorageError
from app.wellness_admin.modules.analytics.admin import bp as analytics_bp
from app.wellness_admin.modules.analytics.posthog_client import PosthogError
from app.wellness_admin.modules.app_users.admin import bp as app_users_bp
from app.wellness_admin.modules.content.admin import bp as content_bp
from app.wellness_admin.modules.explore.admin import bp as explore_bp
from app.wellness_admin.modules.mindfulness.admin import bp as mindfulness_bp
from app.wellness_admin.modules.notifications.admin import bp as notifications_bp
from app.wellness_admin.modules.providers.admin import bp as providers_bp
from app.wellness_admin.modules.rbac_admin.admin import bp as rbac_admin_bp
from app.wellness_admin.modules.security_admin.admin import account_bp, bp as security_admin_bp

_UNGUARDED_PREFIXES = ("/static/", "/storage/", "/health", "/healthz")
_REQUIRED_TABLES = ("users", "sessions", "roles", "permissions", "security_settings", "audit_events", "documents")
_STATE_CHANGING = ("POST", "PUT", "PATCH", "DELETE")
# Authenticated by a shared secret header rather than the session cookie.
_SECRET_AUTH_ENDPOINTS = {"notifications.cron"}


def _refuse_unsafe_production(config) -> None:
    """Production must run on Postgres with a real SECRET_KEY."""
    if (config.get("ENV") or "").strip().lower() not in ("prod", "production"):
        return
    db_url = str(config.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("DATABASE_URL is required in production.")
    if db_url.startswith("sqlite"):
        raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
    if str(config.get("SECRET_KEY") or "") in ("", "change-me"):
        raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")


def backend_config_problems(config) -> list[str]:
    """Misconfigured document store / blob storage settings, as log-ready strings."""
    problems: list[str] = []
    docstore = (config.get("DOCSTORE_BACKEND") or "sql").strip().lower()
    if docstore == "firestore" and not config.get("FIREBASE_PROJECT_ID"):
        problems.append("DOCSTORE_BACKEND=firestore without FIREBASE_PROJECT_ID")
    storage = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if storage == "s3":
        missing = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not config.get(k)]
        if missing:
            problems.append("STORAGE_BACKEND=s3 missing " + ", ".join(missing))
    elif storage == "firebase":
        if not (config.get("FIREBASE_STORAGE_BUCKET") or config.get("FIREBASE_PROJECT_ID")):
            problems.append("STORAGE_BACKEND=firebase without FIREBASE_STORAGE_BUCKET or FIREBASE_PROJECT_ID")
    elif storage != "local":
        problems.append(f"unknown STORAGE_BACKEND={storage!r}, uploads go to local files")
    return problems


def _dispose_engines_after_fork(app: Flask) -> None:
    # gunicorn --preload forks workers; pooled connections must not cross the fork.
    if not hasattr(os, "register_at_fork"):
        return

    def _after_fork_child():
        for key in ("sqlalchemy_engine", "providers_engine"):
            engine = app.extensions.get(key)
            if engine:
                engine.dispose()
        app.logger.info("Disposed DB engines after fork (pid=%s)", os.getpid())

    os.register_at_fork(after_in_child=_after_fork_child)


def _missing_admin_tables(app: Flask) -> list[str]:
    try:
        insp = sa_inspect(app.extensions["sqlalchemy_engine"])
        return [t for t in _REQUIRED_TABLES if not insp.has_table(t)]
    except Exception as e:
        app.logger.exception("Schema health check failed: %s", e)
        return []


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=int(app.config.get("SESSION_TTL_HOURS") or 168))
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _refuse_unsafe_production(app.config)
    hops = int(app.config.get("TRUSTED_PROXY_HOPS") or 0)
    if hops > 0:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)  # type: ignore[method-assign]

    init_db(app)
    _dispose_engines_after_fork(app)

    for problem in backend_config_problems(app.config):
        app.logger.error("Backend config: %s", problem)
    if not (app.config.get("POSTHOG_PROJECT_ID") and app.config.get("POSTHOG_PERSONAL_API_KEY")):
        app.logger.info("PostHog not configured; product analytics endpoints will report enabled=false")

    missing_tables = _missing_admin_tables(app)
    if missing_tables:
        app.logger.error("Admin schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing_tables))

    from app.wellness_admin.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in _STATE_CHANGING and request.endpoint not in PUBLIC_ENDPOINTS | _SECRET_AUTH_ENDPOINTS:
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid."}), 400
        return None

    @app.before_request
    def _load_user():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    @app.before_request
    def _security_policy_gate():
        # 409s tell the client to finish 2FA setup or rotate the password first.
        user = getattr(g, "current_user", None)
        if user is None or not request.path.startswith("/api/"):
            return None
        if (request.endpoint or "").startswith("auth."):
            return None
        reason = policy_block_reason(user)
        if reason:
            return jsonify({"error": reason}), 409
        return None

    app.teardown_appcontext(teardown_db_session)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/api/auth")
    app.register_blueprint(security_admin_bp, url_prefix="/api/admin")
    app.register_blueprint(account_bp, url_prefix="/api/account")
    app.register_blueprint(rbac_admin_bp, url_prefix="/api/rbac")
    app.register_blueprint(app_users_bp, url_prefix="/api/users")
    app.register_blueprint(content_bp, url_prefix="/api")
    app.register_blueprint(explore_bp, url_prefix="/api/explore")
    app.register_blueprint(mindfulness_bp, url_prefix="/api/mindfulness")
    app.register_blueprint(notifications_bp, url_prefix="/api/notifications")
    app.register_blueprint(providers_bp, url_prefix="/api/providers")
    app.register_blueprint(analytics_bp, url_prefix="/api/analytics")

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return jsonify({"error": getattr(e, "description", None) or "Bad request"}), 400

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": getattr(e, "description", None) or "Not found"}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        return jsonify({"error": f"Forbidden: missing permission {missing}" if missing else "Forbidden"}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "File too large."}), 413

    @app.errorhandler(DocumentNotFound)
    def _err_doc_missing(e):  # type: ignore[no-redef]
        return jsonify({"error": str(e) or "Not found"}), 404

    @app.errorhandler(DocumentStoreError)
    @app.errorhandler(StorageError)
    @app.errorhandler(PosthogError)
    @app.errorhandler(MailerError)
    @app.errorhandler(PushError)
    def _err_backend(e):  # type: ignore[no-redef]
        app.logger.error("%s (request_id=%s): %s", type(e).__name__, getattr(g, "request_id", None), e)
        return jsonify({"error": str(e)}), 502

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "Internal server error", "requestId": rid}), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
