"""
Change-request store: submission, listings, cancellation and resubmission.

Nothing here touches items or history; approval lives in engine.py.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.rdms.audit import record_event
from app.rdms.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.rdms.modules.items.models import Item
from app.rdms.modules.items.service import (
    active_child_count,
    get_item_or_404,
    get_project_or_404,
    project_item_count,
)
from app.rdms.modules.notifications.models import Notification
from app.rdms.modules.notifications.service import mark_change_request_read
from app.rdms.rbac import AuthContext
from app.rdms.utils import clean_text, iso

from .models import REQUEST_TYPES, ChangeRequest
from .payloads import (
    CreateItemPayload,
    ProjectDeletePayload,
    UpdateItemPayload,
    build_payload,
    dump_payload,
    parse_payload,
    payload_to_dict,
)

logger = logging.getLogger(__name__)


def get_request_or_404(s: Session, request_id: int) -> ChangeRequest:
    cr = s.get(ChangeRequest, request_id)
    if not cr:
        raise NotFoundError("Change request not found")
    return cr


def _check_related_targets(s: Session, refs, *, self_id: int | None = None) -> None:
    ids = [r.id for r in refs]
    if self_id is not None and self_id in ids:
        raise ValidationError("An item cannot be related to itself.")
    if not ids:
        return
    found = set(s.scalars(select(Item.id).where(Item.id.in_(ids), Item.is_deleted.is_(False))))
    missing = sorted(set(ids) - found)
    if missing:
        raise ValidationError(f"Related items not found: {', '.join(str(i) for i in missing)}")


def submit_change_request(
    s: Session,
    ctx: AuthContext,
    request_type: str,
    fields: dict[str, Any] | None = None,
    *,
    project_id: int | None = None,
    parent_id: int | None = None,
    item_id: int | None = None,
    submit_reason: str | None = None,
    previous_request_id: int | None = None,
) -> ChangeRequest:
    """
    Queue a PENDING change request after validating its targets.

    previous_request_id is stored as a backlink only; the referenced request's
    status and owner are not checked here.
    """
    if request_type not in REQUEST_TYPES:
        raise ValidationError(f"Unknown request type: {request_type}")
    if request_type == "PROJECT_DELETE":
        ctx.require("projects.delete", "Unauthorized: only admins can request project deletion.")
    else:
        ctx.require("requests.submit", "Unauthorized: your role cannot submit change requests.")

    payload = build_payload(request_type, fields)
    target_project_id: int | None = None
    target_parent_id: int | None = None
    target_item_id: int | None = None

    if request_type == "CREATE":
        if not project_id:
            raise ValidationError("Missing required fields: project.")
        project = get_project_or_404(s, project_id)
        target_project_id = project.id
        if parent_id:
            parent = get_item_or_404(s, parent_id)
            if parent.is_deleted:
                raise NotFoundError("Parent item not found")
            if parent.project_id != project.id:
                raise ValidationError("Parent item belongs to a different project.")
            target_parent_id = parent.id
        if isinstance(payload, CreateItemPayload):
            _check_related_targets(s, payload.related_items)

    elif request_type in ("UPDATE", "DELETE"):
        item = get_item_or_404(s, item_id)
        if item.is_deleted:
            raise NotFoundError("Item not found")
        target_item_id = item.id
        target_project_id = item.project_id
        if request_type == "DELETE" and active_child_count(s, item.id) > 0:
            raise ConflictError(
                "Cannot delete item with existing children. Please delete children first.",
                code="HAS_CHILDREN",
            )
        if isinstance(payload, UpdateItemPayload) and payload.related_items is not None:
            _check_related_targets(s, payload.related_items, self_id=item.id)

    else:
        project = get_project_or_404(s, project_id)
        target_project_id = project.id
        if request_type == "PROJECT_DELETE":
            count = project_item_count(s, project.id)
            if count > 0:
                raise ConflictError(
                    f"Cannot delete project with {count} existing items. Please delete all items first.",
                    code="PROJECT_HAS_ITEMS",
                )
            payload = ProjectDeletePayload(title=project.title, code_prefix=project.code_prefix)

    if previous_request_id is not None and not s.get(ChangeRequest, previous_request_id):
        raise NotFoundError("Previous request not found")

    cr = ChangeRequest(
        type=request_type,
        status="PENDING",
        data=dump_payload(payload),
        target_project_id=target_project_id,
        target_parent_id=target_parent_id,
        item_id=target_item_id,
        submitted_by_id=ctx.user_id,
        submitter_name=ctx.username,
        submit_reason=clean_text(submit_reason),
        previous_request_id=previous_request_id,
    )
    s.add(cr)
    s.flush()

    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="change_request.submit",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=cr.submit_reason,
        metadata={
            "type": cr.type,
            "project_id": cr.target_project_id,
            "item_id": cr.item_id,
            "parent_id": cr.target_parent_id,
            "previous_request_id": cr.previous_request_id,
        },
    )
    return cr


def submit_create_item(
    s: Session,
    ctx: AuthContext,
    *,
    project_id: int,
    title: str,
    parent_id: int | None = None,
    content: str | None = None,
    attachments: list | None = None,
    related_items: list | None = None,
    submit_reason: str | None = None,
    previous_request_id: int | None = None,
) -> ChangeRequest:
    fields = {"title": title, "content": content, "attachments": attachments or [], "related_items": related_items or []}
    return submit_change_request(
        s,
        ctx,
        "CREATE",
        fields,
        project_id=project_id,
        parent_id=parent_id,
        submit_reason=submit_reason,
        previous_request_id=previous_request_id,
    )


def submit_update_item(
    s: Session,
    ctx: AuthContext,
    *,
    item_id: int,
    title: str,
    content: str | None = None,
    attachments: list | None = None,
    related_items: list | None = None,
    submit_reason: str | None = None,
    previous_request_id: int | None = None,
) -> ChangeRequest:
    fields = {"title": title, "content": content, "attachments": attachments, "related_items": related_items}
    return submit_change_request(
        s,
        ctx,
        "UPDATE",
        fields,
        item_id=item_id,
        submit_reason=submit_reason,
        previous_request_id=previous_request_id,
    )


def submit_delete_item(
    s: Session,
    ctx: AuthContext,
    *,
    item_id: int,
    submit_reason: str | None = None,
    previous_request_id: int | None = None,
) -> ChangeRequest:
    return submit_change_request(
        s, ctx, "DELETE", {}, item_id=item_id, submit_reason=submit_reason, previous_request_id=previous_request_id
    )


def submit_update_project(
    s: Session,
    ctx: AuthContext,
    *,
    project_id: int,
    title: str,
    description: str | None = None,
    submit_reason: str | None = None,
) -> ChangeRequest:
    return submit_change_request(
        s,
        ctx,
        "PROJECT_UPDATE",
        {"title": title, "description": description},
        project_id=project_id,
        submit_reason=submit_reason,
    )


def submit_delete_project(
    s: Session,
    ctx: AuthContext,
    *,
    project_id: int,
    submit_reason: str | None = None,
) -> ChangeRequest:
    return submit_change_request(s, ctx, "PROJECT_DELETE", {}, project_id=project_id, submit_reason=submit_reason)


# --- Listings ---


def get_pending_requests(s: Session, ctx: AuthContext) -> list[ChangeRequest]:
    ctx.require("requests.review")
    return list(
        s.scalars(
            select(ChangeRequest)
            .where(ChangeRequest.status == "PENDING")
            .order_by(ChangeRequest.created_at.asc(), ChangeRequest.id.asc())
        )
    )


def pending_request_count(s: Session, ctx: AuthContext) -> int:
    if not ctx.can("requests.review"):
        return 0
    return int(s.scalar(select(func.count(ChangeRequest.id)).where(ChangeRequest.status == "PENDING")) or 0)


def get_rejected_requests(s: Session, ctx: AuthContext) -> list[ChangeRequest]:
    return list(
        s.scalars(
            select(ChangeRequest)
            .where(ChangeRequest.submitted_by_id == ctx.user_id, ChangeRequest.status == "REJECTED")
            .order_by(ChangeRequest.updated_at.desc(), ChangeRequest.id.desc())
        )
    )


def rejected_request_count(s: Session, ctx: AuthContext) -> int:
    return int(
        s.scalar(
            select(func.count(ChangeRequest.id)).where(
                ChangeRequest.submitted_by_id == ctx.user_id,
                ChangeRequest.status == "REJECTED",
            )
        )
        or 0
    )


def _require_owner_or_admin(cr: ChangeRequest, ctx: AuthContext) -> None:
    if cr.submitted_by_id != ctx.user_id and not ctx.can("requests.cancel_any"):
        raise AuthorizationError("Unauthorized: only the submitter or an admin can do this.")


def get_rejected_request_detail(s: Session, request_id: int, ctx: AuthContext) -> ChangeRequest:
    cr = get_request_or_404(s, request_id)
    _require_owner_or_admin(cr, ctx)
    return cr


# --- Cancel / resubmit ---


def cancel_request(s: Session, request_id: int, ctx: AuthContext) -> None:
    """Hard-delete a REJECTED request. Items are never affected."""
    cr = get_request_or_404(s, request_id)
    _require_owner_or_admin(cr, ctx)
    if cr.status != "REJECTED":
        raise ConflictError(f"Only rejected requests can be cancelled (status {cr.status}).", code="INVALID_STATE")

    # Detach backlinks explicitly; not every backend enforces ON DELETE SET NULL.
    s.execute(
        update(ChangeRequest)
        .where(ChangeRequest.previous_request_id == cr.id)
        .values(previous_request_id=None)
        .execution_options(synchronize_session="fetch")
    )
    s.execute(
        update(Notification)
        .where(Notification.change_request_id == cr.id)
        .values(change_request_id=None)
        .execution_options(synchronize_session="fetch")
    )
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="change_request.cancel",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        metadata={"type": cr.type, "item_id": cr.item_id, "project_id": cr.target_project_id},
    )
    s.delete(cr)
    s.flush()


def mark_resubmitted(s: Session, request_id: int, ctx: AuthContext) -> ChangeRequest:
    """REJECTED -> RESUBMITTED; a request can be resubmitted only once."""
    cr = get_request_or_404(s, request_id)
    _require_owner_or_admin(cr, ctx)
    now = datetime.utcnow()
    res = s.execute(
        update(ChangeRequest)
        .where(ChangeRequest.id == cr.id, ChangeRequest.status == "REJECTED")
        .values(status="RESUBMITTED", updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount != 1:
        raise ConflictError("Only rejected requests can be resubmitted.", code="INVALID_STATE")

    try:
        with s.begin_nested():
            mark_change_request_read(s, ctx.user_id, cr.id)
    except Exception:
        logger.exception("Failed to sync notifications for resubmitted request %s", cr.id)

    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="change_request.resubmitted",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
    )
    return cr


def resubmit_request(
    s: Session,
    rejected_request_id: int,
    ctx: AuthContext,
    fields: dict[str, Any] | None = None,
    *,
    submit_reason: str | None = None,
) -> ChangeRequest:
    """Submit a corrected copy of a rejected request and retire the original."""
    old = get_request_or_404(s, rejected_request_id)
    _require_owner_or_admin(old, ctx)
    if old.status != "REJECTED":
        raise ConflictError("Only rejected requests can be resubmitted.", code="INVALID_STATE")

    if fields is None:
        fields = payload_to_dict(parse_payload(old.type, old.data))

    new = submit_change_request(
        s,
        ctx,
        old.type,
        fields,
        project_id=old.target_project_id,
        parent_id=old.target_parent_id,
        item_id=old.item_id,
        submit_reason=submit_reason,
        previous_request_id=old.id,
    )
    mark_resubmitted(s, old.id, ctx)
    return new


def request_to_dict(cr: ChangeRequest) -> dict[str, Any]:
    try:
        data: dict[str, Any] | None = payload_to_dict(parse_payload(cr.type, cr.data))
    except ValidationError:
        data = None
    return {
        "id": cr.id,
        "type": cr.type,
        "status": cr.status,
        "data": data,
        "target_project_id": cr.target_project_id,
        "target_project": cr.target_project.code_prefix if cr.target_project else None,
        "target_parent_id": cr.target_parent_id,
        "target_parent": cr.target_parent.full_id if cr.target_parent else None,
        "item_id": cr.item_id,
        "item": cr.item.full_id if cr.item else None,
        "submitted_by_id": cr.submitted_by_id,
        "submitter": cr.submitter_display,
        "submit_reason": cr.submit_reason,
        "reviewed_by_id": cr.reviewed_by_id,
        "reviewer": cr.reviewer_display,
        "review_note": cr.review_note,
        "previous_request_id": cr.previous_request_id,
        "created_at": iso(cr.created_at),
        "updated_at": iso(cr.updated_at),
        "reviewed_at": iso(cr.reviewed_at),
    }
