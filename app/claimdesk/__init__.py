import logging
from datetime import timedelta
from decimal import Decimal

from flask import Flask, g, redirect, render_template, request, session, url_for
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

from app.claimdesk.config import load_config
from app.claimdesk.db import init_db, teardown_db_session
from app.claimdesk.routes import bp as routes_bp
from app.claimdesk.auth import bp as auth_bp, load_current_user
from app.claimdesk.modules.claims.admin import bp as claims_bp

# Tables/columns the code expects; used by the startup schema check.
EXPECTED_SCHEMA = {
    "users": ("id", "username", "password_hash", "role", "is_active"),
    "claims": ("id", "description", "provider_name", "charge_amount", "status", "user_id", "decided_at"),
    "claim_documents": ("id", "claim_id", "storage_key", "sha256"),
    "audit_events": ("id", "action", "actor_username", "client_ip"),
}


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, app.config.get("LOG_LEVEL") or "INFO", logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.claimdesk").setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    from app.claimdesk.rbac import user_has_permission
    from app.claimdesk.security import ensure_csrf_token, is_public_endpoint, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "identity", None), key)

        return {"has_perm": has_perm, "current_identity": getattr(g, "identity", None)}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d %H:%M") -> str:
        if value is None:
            return "—"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("money")
    def _money_filter(value) -> str:
        if value is None:
            return "—"
        return f"${Decimal(value):,.2f}"

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(claims_bp)

    @app.before_request
    def _load_user():
        if request.path.startswith("/static/") or request.endpoint in ("routes.healthz",):
            g.current_user = None
            g.identity = None
            return None
        return load_current_user()

    @app.before_request
    def _login_guard():
        # Permission checks happen per view (rbac.require_permission); this only
        # keeps anonymous users out of every non-public endpoint.
        if is_public_endpoint(request.endpoint) or getattr(g, "identity", None) is not None:
            return None
        nxt = request.full_path if request.method == "GET" else ""
        if nxt.endswith("?"):
            nxt = nxt[:-1]
        return redirect(url_for("auth.login_get", next=nxt or None))

    @app.before_request
    def _csrf_guard():
        if request.path.startswith("/static/") or request.endpoint in ("routes.health", "routes.healthz"):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/register/logout pass through
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                app.logger.warning("CSRF rejected %s %s (request_id=%s)", request.method, request.path, getattr(g, "request_id", None))
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    app.teardown_appcontext(teardown_db_session)

    # Schema health: detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            for table, columns in EXPECTED_SCHEMA.items():
                if not insp.has_table(table):
                    missing.append(f"{table} (table)")
                    continue
                cols = {c["name"] for c in insp.get_columns(table)}
                missing.extend(f"{table}.{col}" for col in columns if col not in cols)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return

        app.config["_schema_health_missing"] = missing
        app.config["_schema_health_ok"] = not missing
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(400)
    def _err_400(e):
        return render_template("errors/400.html", message=getattr(e, "description", None)), 400

    @app.errorhandler(403)
    def _err_403(e):
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(404)
    def _err_404(e):
        return render_template("errors/404.html", message=None), 404

    @app.errorhandler(413)
    def _err_413(e):
        from flask import flash

        flash("File too large. Maximum size is 10MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("claims.claims_list")), 302

    @app.errorhandler(500)
    def _err_500(e):
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
