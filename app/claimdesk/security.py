import secrets

from flask import Request, session
from werkzeug.security import check_password_hash, generate_password_hash

# Endpoints reachable without a logged-in user. Everything else requires one.
PUBLIC_ENDPOINTS = frozenset(
    {
        "routes.index",
        "routes.health",
        "routes.healthz",
        "auth.register_get",
        "auth.register_post",
        "auth.login_get",
        "auth.login_post",
        "static",
    }
)


def is_public_endpoint(endpoint: str | None) -> bool:
    # Unknown endpoint (404) falls through to the normal error handler.
    return endpoint is None or endpoint in PUBLIC_ENDPOINTS


def hash_password(raw_password: str) -> str:
    """Salted one-way hash (werkzeug scrypt/pbkdf2 default)."""
    return generate_password_hash(raw_password)


def verify_password(password_hash: str, raw_password: str) -> bool:
    return check_password_hash(password_hash, raw_password)


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form field or header."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")
    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(token, expected))
