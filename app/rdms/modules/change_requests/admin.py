from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify

from app.rdms.db import db_session
from app.rdms.modules.change_requests.chain import build_review_timeline, chain_entry, get_request_chain
from app.rdms.modules.change_requests.engine import approve_request, reject_request
from app.rdms.modules.change_requests.service import (
    cancel_request,
    get_pending_requests,
    get_rejected_request_detail,
    get_rejected_requests,
    mark_resubmitted,
    pending_request_count,
    rejected_request_count,
    request_to_dict,
    resubmit_request,
    submit_change_request,
)
from app.rdms.rbac import current_context, require_permission
from app.rdms.utils import iso, json_body, ok, optional_int

bp = Blueprint("change_requests", __name__)


def _fields(body: dict) -> dict:
    fields = body.get("data")
    if fields is None:
        fields = {k: body.get(k) for k in ("title", "content", "attachments", "related_items", "description") if k in body}
    return fields


@bp.post("/requests")
@require_permission("requests.submit")
def submit():
    s = db_session()
    body = json_body()
    cr = submit_change_request(
        s,
        current_context(),
        (body.get("type") or "").strip().upper(),
        _fields(body),
        project_id=optional_int(body.get("project_id"), "project_id"),
        parent_id=optional_int(body.get("parent_id"), "parent_id"),
        item_id=optional_int(body.get("item_id"), "item_id"),
        submit_reason=body.get("submit_reason"),
        previous_request_id=optional_int(body.get("previous_request_id"), "previous_request_id"),
    )
    s.commit()
    return ok(request_to_dict(cr), 201)


@bp.get("/requests/pending")
@require_permission("requests.review")
def pending_list():
    s = db_session()
    return ok([request_to_dict(cr) for cr in get_pending_requests(s, current_context())])


@bp.get("/requests/pending/count")
@require_permission("items.view")
def pending_count():
    s = db_session()
    return ok({"count": pending_request_count(s, current_context())})


@bp.post("/requests/<int:request_id>/approve")
@require_permission("requests.review")
def approve(request_id: int):
    s = db_session()
    body = json_body()
    try:
        result = approve_request(s, request_id, current_context(), body.get("review_note"))
        s.commit()
    except RuntimeError as e:
        s.rollback()
        current_app.logger.error("Approval failed (request_id=%s rid=%s): %s", request_id, getattr(g, "request_id", None), e)
        return jsonify({"ok": False, "error": {"code": "APPLY_FAILED", "message": str(e)}}), 500
    return ok(
        {
            "request": request_to_dict(result.request),
            "item_id": result.item.id if result.item else None,
            "history_id": result.history.id if result.history else None,
            "version": result.history.version if result.history else None,
            "iso_doc_path": result.history.iso_doc_path if result.history else None,
        },
        invalidate=result.invalidate_paths,
    )


@bp.post("/requests/<int:request_id>/reject")
@require_permission("requests.review")
def reject(request_id: int):
    s = db_session()
    cr = reject_request(s, request_id, current_context(), json_body().get("review_note"))
    s.commit()
    return ok(request_to_dict(cr))


@bp.get("/requests/rejected")
@require_permission("items.view")
def rejected_list():
    s = db_session()
    return ok([request_to_dict(cr) for cr in get_rejected_requests(s, current_context())])


@bp.get("/requests/rejected/count")
@require_permission("items.view")
def rejected_count():
    s = db_session()
    return ok({"count": rejected_request_count(s, current_context())})


@bp.get("/requests/<int:request_id>")
@require_permission("items.view")
def request_detail(request_id: int):
    s = db_session()
    cr = get_rejected_request_detail(s, request_id, current_context())
    return ok(request_to_dict(cr))


@bp.get("/requests/<int:request_id>/chain")
@require_permission("history.view")
def request_chain(request_id: int):
    s = db_session()
    chain = get_request_chain(s, request_id)
    rounds = [
        [{**ev, "date": iso(ev["date"])} for ev in events]
        for events in build_review_timeline(chain)
    ]
    return ok({"chain": [chain_entry(cr) for cr in chain], "timeline": rounds})


@bp.post("/requests/<int:request_id>/cancel")
@require_permission("items.view")
def cancel(request_id: int):
    s = db_session()
    cancel_request(s, request_id, current_context())
    s.commit()
    return ok()


@bp.post("/requests/<int:request_id>/mark-resubmitted")
@require_permission("requests.submit")
def resubmitted(request_id: int):
    s = db_session()
    cr = mark_resubmitted(s, request_id, current_context())
    s.commit()
    return ok(request_to_dict(cr))


@bp.post("/requests/<int:request_id>/resubmit")
@require_permission("requests.submit")
def resubmit(request_id: int):
    s = db_session()
    body = json_body()
    fields = _fields(body) or None
    cr = resubmit_request(s, request_id, current_context(), fields, submit_reason=body.get("submit_reason"))
    s.commit()
    return ok(request_to_dict(cr), 201)
