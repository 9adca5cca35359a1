from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import TYPE_CHECKING, Any

from flask import abort, current_app, g, redirect, request, url_for

if TYPE_CHECKING:
    from app.claimdesk.accounts import Identity

# Role tag -> permission keys. Unknown roles get nothing.
# ROLE_USER carries claims.decide: every authenticated user can approve/decline
# any claim unless DECIDE_ROLES narrows it. DECIDE_ROLES=ROLE_ADMIN reserves decisions for admins.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "ROLE_USER": frozenset({"claims.view", "claims.create", "claims.decide", "claims.view_all"}),
    "ROLE_ADMIN": frozenset({"claims.view", "claims.create", "claims.decide", "claims.view_all"}),
}


def permissions_for_role(role: str) -> frozenset[str]:
    perms = ROLE_PERMISSIONS.get(role, frozenset())
    decide_roles = current_app.config.get("DECIDE_ROLES") or ()
    if decide_roles and role not in decide_roles:
        perms = perms - {"claims.decide"}
    return perms


def user_has_permission(identity: Identity | None, permission_key: str) -> bool:
    if identity is None:
        return False
    return permission_key in permissions_for_role(identity.role)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            identity: Identity | None = getattr(g, "identity", None)
            # Unauthenticated → redirect to login.
            if identity is None:
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            # Authenticated but unauthorized → 403
            if not user_has_permission(identity, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
