"""
Approval engine: turns a PENDING change request into item/project mutations.

Everything runs inside the caller's transaction. The request row is locked
first and its status is flipped last with a compare-and-swap, so two
reviewers acting on the same request cannot both apply it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.rdms.audit import record_event
from app.rdms.constants import REQUEST_TYPE_LABELS
from app.rdms.errors import AuthorizationError, ConflictError, NotFoundError, RequestError
from app.rdms.modules.history.models import ItemHistory
from app.rdms.modules.history.service import record_history
from app.rdms.modules.items.models import Item, Project
from app.rdms.modules.items.service import (
    active_child_count,
    build_snapshot,
    next_item_full_id,
    project_item_count,
    remove_all_edges,
    serialize_attachments,
    upsert_edge,
)
from app.rdms.modules.notifications.service import notify
from app.rdms.modules.qc_documents.generator import DocumentGenerator
from app.rdms.rbac import AuthContext
from app.rdms.utils import clean_text, default_review_note

from .models import ChangeRequest
from .payloads import (
    CreateItemPayload,
    Payload,
    ProjectDeletePayload,
    ProjectUpdatePayload,
    RelatedItemRef,
    UpdateItemPayload,
    parse_payload,
    payload_to_dict,
)

logger = logging.getLogger(__name__)


@dataclass
class ApprovalResult:
    request: ChangeRequest
    item: Item | None = None
    history: ItemHistory | None = None
    subject: str = ""
    invalidate_paths: list[str] = field(default_factory=list)


def _load_pending(s: Session, request_id: int) -> ChangeRequest:
    cr = s.get(ChangeRequest, request_id, with_for_update=True, populate_existing=True)
    if not cr or cr.status != "PENDING":
        raise NotFoundError("Invalid request: not found or no longer pending.")
    return cr


def _finalize(s: Session, cr: ChangeRequest, status: str, ctx: AuthContext, note: str | None) -> None:
    now = datetime.utcnow()
    res = s.execute(
        update(ChangeRequest)
        .where(ChangeRequest.id == cr.id, ChangeRequest.status == "PENDING")
        .values(
            status=status,
            reviewed_by_id=ctx.user_id,
            reviewer_name=ctx.username,
            review_note=note,
            reviewed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount != 1:
        raise ConflictError("Change request was resolved by another reviewer.", code="INVALID_STATE")


def _link_related(s: Session, item: Item, refs: list[RelatedItemRef]) -> None:
    for ref in refs:
        if ref.id == item.id:
            continue
        target = s.get(Item, ref.id)
        if target is None or target.is_deleted:
            logger.warning("Skipping relation %s -> %s: target missing or deleted", item.full_id, ref.id)
            continue
        upsert_edge(s, item.id, target.id, ref.description)


def _lock_item(s: Session, item_id: int | None) -> Item:
    item = s.get(Item, item_id, with_for_update=True, populate_existing=True) if item_id else None
    if item is None:
        raise NotFoundError("Original item not found.")
    if item.is_deleted:
        raise ConflictError("Item has already been deleted.", code="ITEM_DELETED")
    return item


def _apply_create(s, cr, payload: CreateItemPayload, ctx, note, generator):
    project = s.get(Project, cr.target_project_id) if cr.target_project_id else None
    if project is None:
        raise NotFoundError("Target project not found.")
    parent = None
    if cr.target_parent_id:
        parent = s.get(Item, cr.target_parent_id)
        if parent is None or parent.is_deleted:
            raise NotFoundError("Parent item not found.")

    now = datetime.utcnow()
    item = Item(
        full_id=next_item_full_id(s, project, parent),
        title=payload.title,
        content=payload.content,
        attachments=serialize_attachments(payload.attachments),
        project_id=project.id,
        parent_id=parent.id if parent else None,
        current_version=1,
        published_at=now,
    )
    s.add(item)
    s.flush()
    _link_related(s, item, payload.related_items)

    cr.item = item
    history = record_history(
        s,
        item,
        build_snapshot(s, item),
        "CREATE",
        change_request=cr,
        reviewer=ctx,
        review_note=note,
        generator=generator,
    )
    return item, history


def _apply_update(s, cr, payload: UpdateItemPayload, ctx, note, generator):
    item = _lock_item(s, cr.item_id)
    old_snapshot = build_snapshot(s, item)

    item.title = payload.title
    item.content = payload.content
    item.attachments = serialize_attachments(payload.attachments)
    item.updated_at = datetime.utcnow()
    if payload.related_items is not None:
        remove_all_edges(s, item.id)
        _link_related(s, item, payload.related_items)
    s.flush()

    history = record_history(
        s,
        item,
        build_snapshot(s, item),
        "UPDATE",
        change_request=cr,
        reviewer=ctx,
        review_note=note,
        old_snapshot=old_snapshot,
        generator=generator,
    )
    return item, history


def _apply_delete(s, cr, ctx, note, generator):
    item = _lock_item(s, cr.item_id)
    if active_child_count(s, item.id) > 0:
        raise ConflictError(
            "Cannot delete item with existing children. Please delete children first.",
            code="HAS_CHILDREN",
        )
    snapshot = build_snapshot(s, item)
    remove_all_edges(s, item.id)
    item.is_deleted = True
    item.updated_at = datetime.utcnow()
    s.flush()

    history = record_history(
        s,
        item,
        snapshot,
        "DELETE",
        change_request=cr,
        reviewer=ctx,
        review_note=note,
        generator=generator,
    )
    return item, history


def _lock_project(s: Session, project_id: int | None) -> Project:
    project = s.get(Project, project_id, with_for_update=True, populate_existing=True) if project_id else None
    if project is None:
        raise NotFoundError("Target project not found.")
    return project


def _apply_project_update(s, cr, payload: ProjectUpdatePayload) -> Project:
    project = _lock_project(s, cr.target_project_id)
    project.title = payload.title
    project.description = payload.description
    project.updated_at = datetime.utcnow()
    s.flush()
    return project


def _apply_project_delete(s, cr) -> None:
    project = _lock_project(s, cr.target_project_id)
    count = project_item_count(s, project.id)
    if count > 0:
        raise ConflictError(
            f"Cannot delete project with {count} existing items. Please delete all items first.",
            code="PROJECT_HAS_ITEMS",
        )
    # Other requests pointing at the project are detached by ON DELETE SET NULL.
    cr.target_project = None
    s.flush()
    s.delete(project)
    s.flush()


def _subject(cr: ChangeRequest, payload: Payload, item: Item | None, project: Project | None) -> str:
    if item is not None:
        return f"{item.full_id} {item.title}"
    if project is not None:
        return f"{project.code_prefix} {project.title}"
    if isinstance(payload, ProjectDeletePayload):
        return f"{payload.code_prefix} {payload.title}"
    return f"#{cr.id}"


def approve_request(
    s: Session,
    request_id: int,
    ctx: AuthContext,
    review_note: str | None = None,
    *,
    generator: DocumentGenerator | None = None,
) -> ApprovalResult:
    """
    Apply a PENDING change request and mark it APPROVED.

    Domain failures surface as RequestError subclasses; anything else is
    logged and re-raised as RuntimeError("Failed to apply change: ...").
    The caller owns the transaction and must roll back on any exception.
    """
    ctx.require("requests.review", "Unauthorized: your role cannot review change requests.")
    cr = _load_pending(s, request_id)

    if cr.submitted_by_id == ctx.user_id and not ctx.can("requests.self_approve"):
        raise AuthorizationError("You cannot approve your own change request.", code="SELF_APPROVAL_FORBIDDEN")

    note = clean_text(review_note) or default_review_note()
    payload = parse_payload(cr.type, cr.data)
    paths = ["/admin/approval"]
    if cr.target_project_id:
        paths.append(f"/projects/{cr.target_project_id}")
    if cr.item_id:
        paths.append(f"/items/{cr.item_id}")

    # A failed flush expires cr; the error path must not touch the session.
    request_type = cr.type
    payload_fields = payload_to_dict(payload)

    item: Item | None = None
    history: ItemHistory | None = None
    project: Project | None = None
    try:
        if request_type == "CREATE":
            item, history = _apply_create(s, cr, payload, ctx, note, generator)
            paths.append(f"/items/{item.id}")
        elif request_type == "UPDATE":
            item, history = _apply_update(s, cr, payload, ctx, note, generator)
        elif request_type == "DELETE":
            item, history = _apply_delete(s, cr, ctx, note, generator)
        elif request_type == "PROJECT_UPDATE":
            project = _apply_project_update(s, cr, payload)
        elif request_type == "PROJECT_DELETE":
            _apply_project_delete(s, cr)
            paths.append("/projects")
    except RequestError as e:
        logger.warning("Approval of change request %s rejected: %s", request_id, e)
        raise
    except Exception as e:
        logger.exception(
            "Failed to apply change request %s (type=%s data=%s)",
            request_id,
            request_type,
            payload_fields,
        )
        raise RuntimeError(f"Failed to apply change: {e}") from e

    _finalize(s, cr, "APPROVED", ctx, note)

    subject = _subject(cr, payload, item, project)
    label = REQUEST_TYPE_LABELS.get(cr.type, cr.type)
    notify(
        s,
        user_id=cr.submitted_by_id,
        type="APPROVAL",
        title=f"Change request approved: {subject}",
        message=f"Your {label} request for {subject} was approved by {ctx.username}. Note: {note}",
        link=f"/items/{item.id}" if item is not None and not item.is_deleted else "/admin/history",
        change_request_id=cr.id,
        item_history_id=history.id if history is not None else None,
    )
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="change_request.approve",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=note,
        metadata={
            "type": cr.type,
            "item_id": item.id if item is not None else None,
            "item_full_id": item.full_id if item is not None else None,
            "version": history.version if history is not None else None,
            "history_id": history.id if history is not None else None,
        },
    )
    logger.info("Change request %s (%s) approved by %s: %s", cr.id, cr.type, ctx.username, subject)
    return ApprovalResult(request=cr, item=item, history=history, subject=subject, invalidate_paths=paths)


def reject_request(
    s: Session,
    request_id: int,
    ctx: AuthContext,
    review_note: str | None = None,
) -> ChangeRequest:
    """PENDING -> REJECTED. No item, history or QC side effects."""
    ctx.require("requests.review", "Unauthorized: your role cannot review change requests.")
    cr = _load_pending(s, request_id)
    note = clean_text(review_note)
    _finalize(s, cr, "REJECTED", ctx, note)

    label = REQUEST_TYPE_LABELS.get(cr.type, cr.type)
    subject = cr.item.full_id if cr.item is not None else (cr.target_project.code_prefix if cr.target_project else f"#{cr.id}")
    notify(
        s,
        user_id=cr.submitted_by_id,
        type="REJECTION",
        title=f"Change request rejected: {subject}",
        message=f"Your {label} request for {subject} was rejected by {ctx.username}."
        + (f" Reason: {note}" if note else ""),
        link=f"/admin/rejected-requests/{cr.id}",
        change_request_id=cr.id,
    )
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="change_request.reject",
        entity_type="ChangeRequest",
        entity_id=str(cr.id),
        reason=note,
        metadata={"type": cr.type, "item_id": cr.item_id, "project_id": cr.target_project_id},
    )
    logger.info("Change request %s (%s) rejected by %s", cr.id, cr.type, ctx.username)
    return cr

