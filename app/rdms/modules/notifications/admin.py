from __future__ import annotations

from flask import Blueprint, request

from app.rdms.db import db_session
from app.rdms.modules.notifications.service import (
    list_notifications,
    mark_all_read,
    mark_read,
    notification_to_dict,
    unread_count,
)
from app.rdms.rbac import current_context, require_permission
from app.rdms.utils import ok, optional_int

bp = Blueprint("notifications", __name__)


@bp.get("/notifications")
@require_permission("items.view")
def notifications_list():
    s = db_session()
    limit = optional_int(request.args.get("limit"), "limit") or 20
    rows = list_notifications(s, current_context().user_id, limit=max(1, min(limit, 100)))
    return ok([notification_to_dict(n) for n in rows])


@bp.get("/notifications/unread-count")
@require_permission("items.view")
def notifications_unread():
    s = db_session()
    return ok({"count": unread_count(s, current_context().user_id)})


@bp.post("/notifications/<int:notification_id>/read")
@require_permission("items.view")
def notification_read(notification_id: int):
    s = db_session()
    n = mark_read(s, notification_id, current_context().user_id)
    s.commit()
    return ok(notification_to_dict(n))


@bp.post("/notifications/read-all")
@require_permission("items.view")
def notifications_read_all():
    s = db_session()
    count = mark_all_read(s, current_context().user_id)
    s.commit()
    return ok({"updated": count})
