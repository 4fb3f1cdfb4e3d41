from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.rdms.errors import AuthorizationError
from app.rdms.models import User

# Capabilities per role. Every role may view.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "VIEWER": frozenset({"items.view", "history.view"}),
    "EDITOR": frozenset({"items.view", "history.view", "requests.submit", "projects.create"}),
    "INSPECTOR": frozenset(
        {"items.view", "history.view", "requests.submit", "projects.create", "requests.review"}
    ),
    "ADMIN": frozenset(
        {
            "items.view",
            "history.view",
            "requests.submit",
            "projects.create",
            "requests.review",
            "projects.delete",
            "requests.self_approve",
            "requests.cancel_any",
            "admin.users",
            "audit.view",
        }
    ),
}


@dataclass(frozen=True)
class AuthContext:
    """
    Who is calling, and what they may do.
    Built once per call and handed to every service entry point.
    """

    user_id: int
    username: str
    role: str
    is_qc: bool = False
    is_pm: bool = False

    @classmethod
    def for_user(cls, user: User) -> "AuthContext":
        return cls(
            user_id=user.id,
            username=user.username,
            role=user.role,
            is_qc=bool(user.is_qc),
            is_pm=bool(user.is_pm),
        )

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    def can(self, permission_key: str) -> bool:
        return permission_key in ROLE_PERMISSIONS.get(self.role, frozenset())

    def require(self, permission_key: str, message: str | None = None) -> None:
        if not self.can(permission_key):
            raise AuthorizationError(message or f"Unauthorized: missing permission {permission_key}")


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    return permission_key in ROLE_PERMISSIONS.get(user.role, frozenset())


def current_context() -> AuthContext:
    user: User | None = getattr(g, "current_user", None)
    if not user:
        # require_permission should prevent this
        raise AuthorizationError("Not authenticated", code="UNAUTHENTICATED")
    return AuthContext.for_user(user)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"ok": False, "error": {"code": "UNAUTHENTICATED", "message": "Login required."}}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return (
                    jsonify({"ok": False, "error": {"code": "FORBIDDEN", "message": f"Missing permission {permission_key}."}}),
                    403,
                )
            return fn(*args, **kwargs)

        return wrapped

    return decorator
