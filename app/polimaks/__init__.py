import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request, session

from app.polimaks.admin import bp as admin_bp
from app.polimaks.auth import bp as auth_bp, load_current_user
from app.polimaks.config import load_config
from app.polimaks.db import init_db, teardown_db_session
from app.polimaks.modules.backup.admin import bp as backup_bp
from app.polimaks.modules.clients.admin import bp as clients_bp
from app.polimaks.modules.finance.admin import bp as finance_bp
from app.polimaks.modules.inventory.admin import bp as inventory_bp
from app.polimaks.modules.machines.admin import bp as machines_bp
from app.polimaks.modules.mixtures.admin import bp as mixtures_bp
from app.polimaks.modules.partners.admin import bp as partners_bp
from app.polimaks.modules.production.admin import bp as production_bp
from app.polimaks.modules.staff.admin import bp as staff_bp
from app.polimaks.modules.users.admin import bp as users_bp, me_bp as users_me_bp
from app.polimaks.routes import bp as routes_bp

_UNGUARDED_PREFIXES = ("/health", "/healthz")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    from app.polimaks.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # login/logout carry no token yet
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return {"error": "CSRF token missing or invalid."}, 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child():
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(users_me_bp)
    app.register_blueprint(admin_bp, url_prefix="/admin")
    for module_bp in (
        inventory_bp,
        mixtures_bp,
        machines_bp,
        staff_bp,
        clients_bp,
        production_bp,
        partners_bp,
        finance_bp,
        users_bp,
        backup_bp,
    ):
        app.register_blueprint(module_bp, url_prefix="/admin")

    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    def _json_error(status: int, message: str, **extra):
        body = {"error": message}
        body.update(extra)
        return body, status

    @app.errorhandler(400)
    def _err_400(e):  # type: ignore[no-redef]
        return _json_error(400, getattr(e, "description", None) or "bad request")

    @app.errorhandler(401)
    def _err_401(e):  # type: ignore[no-redef]
        return _json_error(401, "authentication required")

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return _json_error(403, "forbidden", missing_permission=missing)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return _json_error(404, "not found")

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return _json_error(405, "method not allowed")

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return _json_error(413, "Request too large. Maximum size is 5MB.")

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return _json_error(500, "internal server error", request_id=getattr(g, "request_id", None))

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
