from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.rdms.audit import record_event
from app.rdms.db import db_session
from app.rdms.models import User
from app.rdms.security import ensure_csrf_token
from app.rdms.utils import json_body, ok

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a per-request request_id for audit/log correlation.
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "is_qc": bool(user.is_qc),
        "is_pm": bool(user.is_pm),
    }


@bp.post("/login")
def login_post():
    body = json_body()
    username = (body.get("username") or "").strip()
    password = body.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"ok": False, "error": {"code": "RATE_LIMITED", "message": "Too many login attempts. Please wait 5 minutes."}}), 429

    _record_attempt(ip)

    s = db_session()
    user = s.query(User).filter(User.username == username).one_or_none()
    if not user or not user.is_active or not check_password_hash(user.password_hash, password):
        record_event(
            s,
            actor_id=None,
            action="auth.login_failed",
            entity_type="User",
            entity_id=username or None,
            reason="Invalid credentials",
        )
        s.commit()
        return jsonify({"ok": False, "error": {"code": "INVALID_CREDENTIALS", "message": "Invalid credentials."}}), 401

    session["user_id"] = user.id
    _login_attempts[ip].clear()
    record_event(s, actor_id=user.id, actor_username=user.username, action="auth.login", entity_type="User", entity_id=str(user.id))
    s.commit()
    return ok(user_to_dict(user), csrf_token=ensure_csrf_token())


@bp.post("/logout")
def logout():
    user = getattr(g, "current_user", None)
    if user:
        s = db_session()
        record_event(s, actor_id=user.id, actor_username=user.username, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return ok()


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"ok": False, "error": {"code": "UNAUTHENTICATED", "message": "Login required."}}), 401
    return ok(user_to_dict(user), csrf_token=ensure_csrf_token())
