import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    default_role: str
    decide_roles: tuple[str, ...]
    claim_lock_decided: bool
    login_rate_limit: int
    login_rate_window: int

    storage_backend: str
    storage_local_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def _getenv_list(name: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in _getenv(name).split(",") if part.strip())


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///claimdesk.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        default_role=_getenv("DEFAULT_ROLE", "ROLE_USER"),
        decide_roles=_getenv_list("DECIDE_ROLES"),
        claim_lock_decided=_getenv("CLAIM_LOCK_DECIDED") == "1",
        login_rate_limit=_getenv_int("LOGIN_RATE_LIMIT", 5),
        login_rate_window=_getenv_int("LOGIN_RATE_WINDOW", 300),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_local_root=_getenv("STORAGE_LOCAL_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        # claim workflow
        "DEFAULT_ROLE": s.default_role,
        "DECIDE_ROLES": s.decide_roles,  # empty = every role with claims.decide
        "CLAIM_LOCK_DECIDED": s.claim_lock_decided,
        # login throttling (per client IP)
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW": s.login_rate_window,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_LOCAL_ROOT": s.storage_local_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # supporting documents (10MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
