import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, request
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.botconsole.api import ApiError, fail
from app.botconsole.config import load_config
from app.botconsole.db import init_db, teardown_db_session
from app.botconsole.routes import bp as routes_bp
from app.botconsole.auth import bp as auth_bp, load_current_user
from app.botconsole.admin import bp as admin_bp
from app.botconsole.modules.robots.admin import bp as robots_bp
from app.botconsole.modules.worktool.admin import bp as worktool_bp
from app.botconsole.modules.commands.admin import bp as commands_bp
from app.botconsole.modules.loadbalancing.admin import bp as loadbalancing_bp
from app.botconsole.modules.qa.admin import bp as qa_bp
from app.botconsole.modules.alerts.admin import bp as alerts_bp
from app.botconsole.modules.flows.admin import bp as flows_bp
from app.botconsole.modules.ai.admin import bp as ai_bp
from app.botconsole.modules.decisions.admin import bp as decisions_bp
from app.botconsole.modules.callback.admin import bp as messages_bp
from app.botconsole.modules.callback.routes import bp as callback_bp

# Paths guarded by the schema health check.
_SCHEMA_GUARDED_PREFIXES = ("/api/admin", "/api/flow-engine", "/api/collaboration")
# Blueprints that do not use the browser session (and so skip CSRF).
_CSRF_EXEMPT_BLUEPRINTS = ("auth.", "callback.")


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    app.json.sort_keys = False

    logging.basicConfig(level=app.config.get("LOG_LEVEL") or "INFO")
    app.logger.setLevel(app.config.get("LOG_LEVEL") or "INFO")

    from app.botconsole.security import validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            if (request.endpoint or "").startswith(_CSRF_EXEMPT_BLUEPRINTS):
                return None
            if not validate_csrf(request):
                return fail("CSRF token missing or invalid.", 400)
        return None

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

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/api/admin")
    app.register_blueprint(robots_bp, url_prefix="/api/admin")
    app.register_blueprint(worktool_bp, url_prefix="/api/admin")
    app.register_blueprint(commands_bp, url_prefix="/api/admin/robot-commands")
    app.register_blueprint(loadbalancing_bp, url_prefix="/api/admin/robot-loadbalancing")
    app.register_blueprint(qa_bp, url_prefix="/api/admin/qa")
    app.register_blueprint(alerts_bp, url_prefix="/api/admin/alerts")
    app.register_blueprint(flows_bp, url_prefix="/api/flow-engine")
    app.register_blueprint(ai_bp, url_prefix="/api/admin/ai")
    app.register_blueprint(decisions_bp, url_prefix="/api/collaboration")
    app.register_blueprint(messages_bp, url_prefix="/api/admin")
    app.register_blueprint(callback_bp, url_prefix="/api/robot")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    # Migration health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])
    app.config.setdefault("_schema_health_logged", False)

    def _run_schema_health_check() -> None:
        from app.botconsole.models import Base

        missing: list[str] = []
        try:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine is None:
                raise RuntimeError("sqlalchemy_engine not initialized")
            insp = sa_inspect(engine)
            existing = set(insp.get_table_names())
            missing = sorted(f"{name} (table)" for name in Base.metadata.tables if name not in existing)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)

        app.config["_schema_health_missing"] = missing
        if missing and not app.config.get("_schema_health_logged"):
            app.config["_schema_health_logged"] = True
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        app.config["_schema_health_ok"] = not missing

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        if not request.path.startswith(_SCHEMA_GUARDED_PREFIXES):
            return None
        # Migrations may have run since boot.
        _run_schema_health_check()
        if app.config.get("_schema_health_ok"):
            return None
        return fail(
            "Database schema is out of date; run `alembic upgrade head`.",
            500,
            missing=app.config.get("_schema_health_missing") or [],
        )

    @app.errorhandler(ApiError)
    def _err_api(e: ApiError):  # type: ignore[no-redef]
        if e.status >= 500:
            app.logger.error("ApiError %s (request_id=%s): %s", e.status, getattr(g, "request_id", None), e.message)
        return fail(e.message, e.status, errors=e.errors)

    @app.errorhandler(ValueError)
    def _err_value(e: ValueError):  # type: ignore[no-redef]
        return fail(str(e) or "Invalid request.", 400)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return fail("Not found", 404)

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return fail("Method not allowed", 405)

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return fail("Request too large. Maximum size is 5MB.", 413)

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return fail("Forbidden", 403, missing_permission=missing)

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        original = getattr(e, "original_exception", None)
        if original is not None:
            app.logger.error("Unhandled 500 (request_id=%s)", rid, exc_info=original)
        else:
            app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return fail("Internal server error", 500, request_id=rid)

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return fail(e.description or e.name, e.code or 500)

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
