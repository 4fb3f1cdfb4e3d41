from __future__ import annotations

import json
import re
from datetime import timedelta

from flask import Blueprint, request
from werkzeug.security import generate_password_hash

from app.rdms.audit import record_event
from app.rdms.auth import user_to_dict
from app.rdms.db import db_session
from app.rdms.errors import ConflictError, NotFoundError, ValidationError
from app.rdms.models import ROLES, AuditEvent, User
from app.rdms.rbac import current_context, require_permission
from app.rdms.utils import iso, json_body, ok, parse_date

bp = Blueprint("admin", __name__)

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,64}$")


def _is_valid_email(email: str) -> bool:
    return bool(re.match(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$", email))


def _check_password(password: str) -> None:
    if not password:
        raise ValidationError("Password is required.")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters.")


def _role(value: str | None) -> str:
    role = (value or "VIEWER").strip().upper()
    if role not in ROLES:
        raise ValidationError(f"Unknown role: {role}")
    return role


def _event_to_dict(ev: AuditEvent) -> dict:
    return {
        "id": ev.id,
        "created_at": iso(ev.created_at),
        "request_id": ev.request_id,
        "actor_user_id": ev.actor_user_id,
        "actor_username": ev.actor_username,
        "action": ev.action,
        "entity_type": ev.entity_type,
        "entity_id": ev.entity_id,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
        "client_ip": ev.client_ip,
    }


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """Last 200 audit events, filterable by action, actor and date range."""
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor = (request.args.get("actor") or "").strip()
    date_from = parse_date(request.args.get("date_from"))
    date_to = parse_date(request.args.get("date_to"))

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor:
        q = q.filter(AuditEvent.actor_username.like(f"%{actor}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= date_from)
    if date_to:
        # inclusive end date
        q = q.filter(AuditEvent.created_at < date_to + timedelta(days=1))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return ok([_event_to_dict(ev) for ev in events])


@bp.get("/users")
@require_permission("admin.users")
def users_list():
    s = db_session()
    users = s.query(User).order_by(User.username.asc()).all()
    return ok([{**user_to_dict(u), "is_active": u.is_active} for u in users])


@bp.post("/users")
@require_permission("admin.users")
def users_create():
    s = db_session()
    ctx = current_context()
    body = json_body()

    username = (body.get("username") or "").strip()
    email = (body.get("email") or "").strip().lower() or None
    password = body.get("password") or ""
    if not _USERNAME_RE.match(username):
        raise ValidationError("Username must be 3-64 letters, digits, dots, dashes or underscores.")
    if email and not _is_valid_email(email):
        raise ValidationError("Invalid email format.")
    _check_password(password)
    if s.query(User).filter(User.username == username).one_or_none():
        raise ConflictError("An account with this username already exists.", code="DUPLICATE_USERNAME")
    if email and s.query(User).filter(User.email == email).one_or_none():
        raise ConflictError("An account with this email already exists.", code="DUPLICATE_EMAIL")

    user = User(
        username=username,
        email=email,
        password_hash=generate_password_hash(password),
        role=_role(body.get("role")),
        is_qc=bool(body.get("is_qc")),
        is_pm=bool(body.get("is_pm")),
        is_active=True,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"username": username, "role": user.role, "is_qc": user.is_qc, "is_pm": user.is_pm},
    )
    s.commit()
    return ok(user_to_dict(user), 201)


@bp.post("/users/<int:user_id>/update")
@require_permission("admin.users")
def users_update(user_id: int):
    s = db_session()
    ctx = current_context()
    body = json_body()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.id == ctx.user_id:
        raise ValidationError("You cannot modify your own account here.")

    before = {"role": user.role, "is_qc": user.is_qc, "is_pm": user.is_pm, "is_active": user.is_active}
    if "role" in body:
        user.role = _role(body.get("role"))
    for flag in ("is_qc", "is_pm", "is_active"):
        if flag in body:
            setattr(user, flag, bool(body.get(flag)))
    after = {"role": user.role, "is_qc": user.is_qc, "is_pm": user.is_pm, "is_active": user.is_active}

    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    s.commit()
    return ok({**user_to_dict(user), "is_active": user.is_active})


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("admin.users")
def users_reset_password(user_id: int):
    s = db_session()
    ctx = current_context()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    password = json_body().get("password") or ""
    _check_password(password)
    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target": user.username},
    )
    s.commit()
    return ok()
