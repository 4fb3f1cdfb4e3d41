from __future__ import annotations

from flask import Blueprint, request

from app.rdms.db import db_session
from app.rdms.errors import ValidationError
from app.rdms.modules.history.models import CHANGE_TYPES
from app.rdms.modules.history.service import (
    get_global_history,
    get_history_detail,
    get_item_history,
    get_item_history_by_full_id,
    get_project_history_stats,
    get_project_items,
    history_to_dict,
)
from app.rdms.rbac import require_permission
from app.rdms.utils import ok, optional_int, parse_date

bp = Blueprint("history", __name__)


@bp.get("/history")
@require_permission("history.view")
def global_history():
    s = db_session()
    change_type = (request.args.get("change_type") or "ALL").strip().upper()
    if change_type != "ALL" and change_type not in CHANGE_TYPES:
        raise ValidationError(f"Unknown change type: {change_type}")
    rows = get_global_history(
        s,
        project_id=optional_int(request.args.get("project_id"), "project_id"),
        change_type=change_type,
        date_from=parse_date(request.args.get("date_from")),
        date_to=parse_date(request.args.get("date_to"), end_of_day=True),
    )
    return ok([history_to_dict(h) for h in rows])


@bp.get("/history/projects")
@require_permission("history.view")
def project_stats():
    s = db_session()
    return ok(get_project_history_stats(s))


@bp.get("/history/projects/<int:project_id>/items")
@require_permission("history.view")
def project_items(project_id: int):
    s = db_session()
    return ok(get_project_items(s, project_id))


@bp.get("/history/projects/<int:project_id>/items/<path:full_id>")
@require_permission("history.view")
def item_history_by_full_id(project_id: int, full_id: str):
    s = db_session()
    return ok([history_to_dict(h) for h in get_item_history_by_full_id(s, project_id, full_id)])


@bp.get("/history/<int:history_id>")
@require_permission("history.view")
def history_detail(history_id: int):
    s = db_session()
    return ok(history_to_dict(get_history_detail(s, history_id), detail=True))


@bp.get("/items/<int:item_id>/history")
@require_permission("history.view")
def item_history(item_id: int):
    s = db_session()
    return ok([history_to_dict(h) for h in get_item_history(s, item_id)])
