# auth_guard.py
from __future__ import annotations

import jwt
from functools import wraps
from datetime import datetime, timedelta, timezone

from flask import request, jsonify, g, current_app

from db import db
from models.user import User

__all__ = ["ROLE_PERMISSIONS", "issue_token", "has_permission", "require_role", "require_permission"]

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "Admin": {"manage_users", "manage_departments", "view_analytics", "manage_settings"},
    "Analyst": {"view_analytics", "export_data"},
    "Moderator": {"review_submissions", "manage_cases"},
    "DeptOfficer": {"manage_assigned_cases", "view_department_data"},
}


def has_permission(role: str | None, permission: str) -> bool:
    # SuperAdmin has all permissions
    if role == "SuperAdmin":
        return True
    return permission in ROLE_PERMISSIONS.get(role or "", set())


def issue_token(user: User) -> str:
    ttl = int(current_app.config.get("JWT_TTL_HOURS", 24))
    return jwt.encode(
        {
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "exp": datetime.now(timezone.utc) + timedelta(hours=ttl),
        },
        current_app.config["SECRET_KEY"],
        algorithm="HS256",
    )


def _authenticate():
    """
    Resolve the bearer token to an active user.
    Returns (user, None) or (None, error_response).
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None, (jsonify(error="Missing token"), 401)

    token = auth.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, current_app.config["SECRET_KEY"], algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        return None, (jsonify(error="Token has expired"), 401)
    except jwt.InvalidTokenError:
        return None, (jsonify(error="Invalid token"), 401)

    user = db.session.get(User, payload.get("user_id"))
    if not user or not user.is_active:
        return None, (jsonify(error="User not found"), 401)

    # Stash user for downstream handlers
    g.user = user  # type: ignore[attr-defined]
    g.role = user.role  # type: ignore[attr-defined]
    current_app.logger.info(
        "[guard] %s %s uid=%s role=%s ip=%s",
        request.method, request.path, user.id, user.role, request.remote_addr,
    )
    return user, None


def require_role(*roles):
    """
    Usage:
      @require_role()                    -> any authenticated user
      @require_role("Analyst")           -> only Analyst (or SuperAdmin)
      @require_role("Admin", "Analyst")  -> Admin or Analyst (or SuperAdmin)
    """
    allowed = {str(r) for r in roles if r}

    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            user, err = _authenticate()
            if err:
                return err
            if allowed and user.role not in allowed and user.role != "SuperAdmin":
                return jsonify(error="Insufficient permissions"), 403
            return f(*args, **kwargs)

        return wrapped

    return decorator


def require_permission(permission: str):
    """Gate a view on a named permission from ROLE_PERMISSIONS."""

    def decorator(f):
        @wraps(f)
        def wrapped(*args, **kwargs):
            user, err = _authenticate()
            if err:
                return err
            if not has_permission(user.role, permission):
                return jsonify(error="Insufficient permissions"), 403
            return f(*args, **kwargs)

        return wrapped

    return decorator
