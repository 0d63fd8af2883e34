from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g

from app.botconsole.api import fail
from app.botconsole.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return fail("Authentication required", 401)
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return fail("Permission denied", 403, missing_permission=permission_key)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u
