from flask import Blueprint, current_app, g, redirect, render_template, url_for
from sqlalchemy import text

from app.claimdesk.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if getattr(g, "identity", None) is not None:
        return redirect(url_for("claims.claims_list"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including DB reachability."""
    try:
        db_session().execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False
    schema_ok = bool(current_app.config.get("_schema_health_ok", True))
    return {"ok": db_ok, "db": db_ok, "schema": schema_ok}, (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast liveness probe. No DB access, minimal overhead.
    """
    return "ok", 200
