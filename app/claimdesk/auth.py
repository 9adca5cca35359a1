from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, flash, g, redirect, render_template, request, session, url_for

from app.claimdesk.accounts import authenticate, identity_for, register_user
from app.claimdesk.audit import record_event
from app.claimdesk.db import db_session
from app.claimdesk.errors import DuplicateUsername, InvalidCredentials, ValidationError
from app.claimdesk.models import User

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)


def _check_rate_limit(ip: str) -> bool:
    window = current_app.config.get("LOGIN_RATE_WINDOW", 300)
    limit = current_app.config.get("LOGIN_RATE_LIMIT", 5)
    cutoff = datetime.utcnow() - timedelta(seconds=window)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= limit


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _safe_next(nxt: str) -> str | None:
    # Only allow local paths to avoid open redirects.
    if nxt.startswith("/") and not nxt.startswith("//"):
        return nxt
    return None


def load_current_user() -> None:
    """
    Loads g.current_user / g.identity from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.identity = None

    user_id = session.get("user_id")
    if not user_id:
        return

    s = db_session()
    user = s.get(User, int(user_id))
    if not user or not user.is_active:
        session.pop("user_id", None)
        return
    g.current_user = user
    g.identity = identity_for(user)


# ---------- Registration ----------
@bp.get("/register")
def register_get():
    return render_template("auth/register.html", username="")


@bp.post("/register")
def register_post():
    username = (request.form.get("username") or "").strip()
    password = request.form.get("password") or ""
    confirm = request.form.get("confirm_password")

    s = db_session()
    try:
        register_user(
            s,
            username,
            password,
            role=current_app.config.get("DEFAULT_ROLE", "ROLE_USER"),
            confirm_password=confirm,
        )
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return render_template("auth/register.html", username=username), 400
    except DuplicateUsername as e:
        s.rollback()
        flash(str(e), "danger")
        return render_template("auth/register.html", username=username), 409
    s.commit()

    flash("Registration successful. Please log in.", "success")
    return redirect(url_for("auth.login_get"))


# ---------- Login / logout ----------
@bp.get("/login")
def login_get():
    if getattr(g, "identity", None) is not None:
        return redirect(url_for("claims.claims_list"))
    nxt = (request.args.get("next") or "").strip()
    return render_template("auth/login.html", next=nxt, username="")


@bp.post("/login")
def login_post():
    username = (request.form.get("username") or "").strip()
    password = request.form.get("password") or ""
    nxt = (request.form.get("next") or "").strip()
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        current_app.logger.warning("Login rate limit hit (ip=%s request_id=%s)", ip, g.request_id)
        flash("Too many login attempts. Please wait a few minutes.", "danger")
        return render_template("auth/login.html", next=nxt, username=username), 429

    _record_attempt(ip)

    s = db_session()
    try:
        identity = authenticate(s, username, password)
    except InvalidCredentials as e:
        record_event(
            s,
            actor=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=username,
            reason="Invalid credentials",
            metadata={"username": username},
        )
        s.commit()
        flash(str(e), "danger")
        return render_template("auth/login.html", next=nxt, username=username), 401

    session.clear()
    session["user_id"] = identity.user_id
    _login_attempts[ip].clear()
    record_event(s, actor=identity, action="auth.login", entity_type="User", entity_id=str(identity.user_id))
    s.commit()
    current_app.logger.info("User %s logged in (request_id=%s)", identity.user_id, g.request_id)

    return redirect(_safe_next(nxt) or url_for("claims.claims_list"))


@bp.route("/logout", methods=["GET", "POST"])
def logout():
    identity = getattr(g, "identity", None)
    if identity is not None:
        s = db_session()
        record_event(s, actor=identity, action="auth.logout", entity_type="User", entity_id=str(identity.user_id))
        s.commit()
    session.clear()
    flash("You have been logged out.", "success")
    return redirect(url_for("auth.login_get"))
