"""
Account registration and credential checks.

Handles the User store side of login: creating accounts with a salted password
hash and turning a username/password pair into an Identity.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.claimdesk.audit import record_event
from app.claimdesk.errors import DuplicateUsername, InvalidCredentials, ValidationError
from app.claimdesk.models import User
from app.claimdesk.security import hash_password, verify_password

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "ROLE_USER"
USERNAME_MAX_LENGTH = 150


@dataclass(frozen=True)
class Identity:
    """Authenticated principal passed into every claim workflow call."""

    user_id: int
    username: str
    role: str


def identity_for(user: User) -> Identity:
    return Identity(user_id=user.id, username=user.username, role=user.role)


def validate_registration(username: str, raw_password: str, confirm_password: str | None = None) -> list[str]:
    errors = []
    if not username:
        errors.append("Username is required.")
    elif len(username) > USERNAME_MAX_LENGTH:
        errors.append(f"Username must be at most {USERNAME_MAX_LENGTH} characters.")
    if not raw_password:
        errors.append("Password is required.")
    elif confirm_password is not None and confirm_password != raw_password:
        errors.append("Passwords do not match.")
    return errors


def register_user(
    s: Session,
    username: str,
    raw_password: str,
    *,
    role: str = DEFAULT_ROLE,
    confirm_password: str | None = None,
) -> int:
    """Create a user with a hashed password. Returns the new user id."""
    username = (username or "").strip()
    errors = validate_registration(username, raw_password or "", confirm_password)
    if errors:
        raise ValidationError(errors)

    if s.query(User.id).filter(User.username == username).first() is not None:
        raise DuplicateUsername(username)

    user = User(username=username, password_hash=hash_password(raw_password), role=role, is_active=True)
    s.add(user)
    try:
        s.flush()
    except IntegrityError:
        # Lost a race against a concurrent registration of the same name.
        s.rollback()
        raise DuplicateUsername(username) from None

    record_event(
        s,
        actor=identity_for(user),
        action="auth.register",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": username, "role": role},
    )
    logger.info("Registered user id=%s username=%s role=%s", user.id, username, role)
    return user.id


def authenticate(s: Session, username: str, raw_password: str) -> Identity:
    """Check a username/password pair. Read-only."""
    username = (username or "").strip()
    user = s.query(User).filter(User.username == username).one_or_none()
    if not user or not user.is_active or not verify_password(user.password_hash, raw_password or ""):
        raise InvalidCredentials()
    return identity_for(user)
