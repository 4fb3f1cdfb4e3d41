"""
QC / PM sign-off workflow for generated QC documents.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.rdms.audit import record_event
from app.rdms.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.rdms.modules.change_requests.chain import build_review_timeline, get_request_chain
from app.rdms.modules.history.models import ItemHistory
from app.rdms.modules.notifications.service import notify
from app.rdms.rbac import AuthContext
from app.rdms.utils import clean_text, default_review_note, iso

from .generator import DocumentContext, DocumentGenerator, Signatures, get_document_generator
from .models import QCDocumentApproval, QCRevisionRequest

logger = logging.getLogger(__name__)


def create_qc_approval(s: Session, history: ItemHistory) -> QCDocumentApproval:
    a = QCDocumentApproval(item_history=history, status="PENDING_QC", revision_count=0)
    s.add(a)
    s.flush()
    return a


def signatures_for(approval: QCDocumentApproval | None) -> Signatures:
    if approval is None:
        return Signatures()
    return Signatures(
        qc_user=approval.qc_approver_name,
        qc_date=approval.qc_approved_at,
        qc_note=approval.qc_note,
        pm_user=approval.pm_approver_name,
        pm_date=approval.pm_approved_at,
        pm_note=approval.pm_note,
        revisions=[revision_to_dict(r, raw_dates=True) for r in approval.revisions],
    )


def _timeline_for(s: Session, history: ItemHistory) -> list[list[dict[str, Any]]]:
    rounds: list[list[dict[str, Any]]] = []
    if history.change_request_id:
        try:
            rounds = build_review_timeline(get_request_chain(s, history.change_request_id))
        except NotFoundError:
            rounds = []

    approval_event = {
        "type": "APPROVAL",
        "user": history.reviewer_name or "reviewer",
        "date": history.created_at,
        "note": history.review_note,
        "status": "success",
    }
    if not rounds:
        rounds = [
            [
                {
                    "type": "SUBMISSION",
                    "user": history.submitter_name or "submitter",
                    "date": history.created_at,
                    "note": history.submit_reason,
                    "status": "info",
                },
                approval_event,
            ]
        ]
    elif len(rounds[-1]) == 1:
        # The originating request is still mid-approval when the ledger writes.
        rounds[-1].append(approval_event)
    return rounds


def build_document_context(
    s: Session,
    history: ItemHistory,
    *,
    signatures: Signatures | None = None,
) -> DocumentContext:
    project = history.project
    return DocumentContext(
        history_id=history.id,
        version=history.version,
        change_type=history.change_type,
        item_full_id=history.item_full_id,
        item_title=history.item_title,
        project_id=history.project_id,
        project_label=f"{project.code_prefix} {project.title}" if project else "-",
        snapshot=json.loads(history.snapshot) if history.snapshot else {},
        diff=json.loads(history.diff) if history.diff else None,
        timeline=_timeline_for(s, history),
        signatures=signatures or signatures_for(history.qc_approval),
    )


def attach_document(
    s: Session,
    history: ItemHistory,
    *,
    generator: DocumentGenerator | None = None,
    signatures: Signatures | None = None,
) -> str | None:
    """
    Generate the QC document and store its path on the history row.
    Failure is logged and swallowed; the history row stays without a path.
    """
    try:
        with s.begin_nested():
            ctx = build_document_context(s, history, signatures=signatures)
            path = (generator or get_document_generator()).generate(ctx)
            history.iso_doc_path = path
            s.flush()
        return path
    except Exception:
        logger.exception(
            "QC document generation failed (history_id=%s item=%s v%s)",
            history.id,
            history.item_full_id,
            history.version,
        )
        return None


def get_approval_or_404(s: Session, approval_id: int, *, lock: bool = False) -> QCDocumentApproval:
    if lock:
        a = s.get(QCDocumentApproval, approval_id, with_for_update=True, populate_existing=True)
    else:
        a = s.get(QCDocumentApproval, approval_id)
    if not a:
        raise NotFoundError("Approval record not found")
    return a


def _forbid_self_sign(ctx: AuthContext, approval: QCDocumentApproval) -> None:
    h = approval.item_history
    if h.submitted_by_id is not None and h.submitted_by_id == ctx.user_id and not ctx.is_admin:
        raise AuthorizationError(
            "You cannot sign off a document for your own change.",
            code="SELF_APPROVAL_FORBIDDEN",
        )


def _stage_link(history: ItemHistory) -> str:
    return f"/admin/history/detail/{history.id}"


def approve_as_qc(
    s: Session,
    approval_id: int,
    ctx: AuthContext,
    note: str | None = None,
    *,
    generator: DocumentGenerator | None = None,
) -> QCDocumentApproval:
    if not ctx.is_qc:
        raise AuthorizationError("QC qualification required", code="QC_REQUIRED")
    a = get_approval_or_404(s, approval_id, lock=True)
    if a.status != "PENDING_QC":
        raise ConflictError("Document is not pending QC approval", code="INVALID_STATE")
    _forbid_self_sign(ctx, a)

    now = datetime.utcnow()
    a.status = "PENDING_PM"
    a.qc_approved_by_id = ctx.user_id
    a.qc_approver_name = ctx.username
    a.qc_approved_at = now
    a.qc_note = clean_text(note) or default_review_note()
    a.updated_at = now
    s.flush()

    attach_document(s, a.item_history, generator=generator, signatures=signatures_for(a))
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="qc_document.qc_approve",
        entity_type="QCDocumentApproval",
        entity_id=str(a.id),
        reason=a.qc_note,
        metadata={"item_history_id": a.item_history_id, "status": a.status},
    )
    return a


def approve_as_pm(
    s: Session,
    approval_id: int,
    ctx: AuthContext,
    note: str | None = None,
    *,
    generator: DocumentGenerator | None = None,
) -> QCDocumentApproval:
    if not ctx.is_pm:
        raise AuthorizationError("PM qualification required", code="PM_REQUIRED")
    a = get_approval_or_404(s, approval_id, lock=True)
    if a.status != "PENDING_PM":
        raise ConflictError("Document is not pending PM approval", code="INVALID_STATE")
    _forbid_self_sign(ctx, a)

    now = datetime.utcnow()
    a.status = "APPROVED"
    a.pm_approved_by_id = ctx.user_id
    a.pm_approver_name = ctx.username
    a.pm_approved_at = now
    a.pm_note = clean_text(note) or default_review_note()
    a.updated_at = now
    s.flush()

    h = a.item_history
    attach_document(s, h, generator=generator, signatures=signatures_for(a))
    notify(
        s,
        user_id=h.submitted_by_id,
        type="COMPLETED",
        title="QC document completed",
        message=f"The QC document for {h.item_full_id} {h.item_title} (v{h.version}) has been signed off by QC and PM.",
        link=_stage_link(h),
        qc_approval_id=a.id,
        item_history_id=h.id,
    )
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="qc_document.pm_approve",
        entity_type="QCDocumentApproval",
        entity_id=str(a.id),
        reason=a.pm_note,
        metadata={"item_history_id": a.item_history_id, "status": a.status},
    )
    return a


def _require_stage_role(ctx: AuthContext, approval: QCDocumentApproval) -> None:
    if approval.status == "PENDING_QC":
        if not ctx.is_qc:
            raise AuthorizationError("Only QC users can act at the QC stage", code="QC_REQUIRED")
    elif approval.status == "PENDING_PM":
        if not ctx.is_pm:
            raise AuthorizationError("Only PM users can act at the PM stage", code="PM_REQUIRED")
    else:
        raise ConflictError(f"Document is not awaiting sign-off (status {approval.status})", code="INVALID_STATE")


def reject_qc_document(s: Session, approval_id: int, ctx: AuthContext, note: str) -> QCDocumentApproval:
    note = clean_text(note)
    if not note:
        raise ValidationError("A rejection note is required.")
    if not (ctx.is_qc or ctx.is_pm):
        raise AuthorizationError("QC or PM qualification required", code="QC_REQUIRED")
    a = get_approval_or_404(s, approval_id, lock=True)
    _require_stage_role(ctx, a)

    now = datetime.utcnow()
    stage = a.status
    if stage == "PENDING_QC":
        a.qc_approved_by_id = ctx.user_id
        a.qc_approver_name = ctx.username
        a.qc_approved_at = now
        a.qc_note = note
    else:
        a.pm_approved_by_id = ctx.user_id
        a.pm_approver_name = ctx.username
        a.pm_approved_at = now
        a.pm_note = note
    a.status = "REJECTED"
    a.updated_at = now

    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="qc_document.reject",
        entity_type="QCDocumentApproval",
        entity_id=str(a.id),
        reason=note,
        metadata={"item_history_id": a.item_history_id, "stage": stage},
    )
    return a


def request_revision(s: Session, approval_id: int, ctx: AuthContext, note: str) -> QCRevisionRequest:
    note = clean_text(note)
    if not note:
        raise ValidationError("A revision request needs a note.")
    a = get_approval_or_404(s, approval_id, lock=True)
    _require_stage_role(ctx, a)

    stage = a.status
    a.revision_count = (a.revision_count or 0) + 1
    rev = QCRevisionRequest(
        revision_number=a.revision_count,
        requested_stage=stage,
        requested_by_id=ctx.user_id,
        requester_name=ctx.username,
        request_note=note,
    )
    a.revisions.append(rev)
    a.status = "REVISION_REQUESTED"
    a.updated_at = datetime.utcnow()
    s.flush()

    h = a.item_history
    notify(
        s,
        user_id=h.submitted_by_id,
        type="REVISION_REQUEST",
        title="Revision requested",
        message=f"{ctx.username} requested a revision of {h.item_full_id} {h.item_title} (v{h.version}): {note}",
        link=_stage_link(h),
        qc_approval_id=a.id,
        item_history_id=h.id,
    )
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="qc_document.request_revision",
        entity_type="QCDocumentApproval",
        entity_id=str(a.id),
        reason=note,
        metadata={"item_history_id": a.item_history_id, "stage": stage, "revision_number": rev.revision_number},
    )
    return rev


def resolve_revision(
    s: Session,
    approval_id: int,
    ctx: AuthContext,
    note: str | None = None,
    *,
    generator: DocumentGenerator | None = None,
) -> QCDocumentApproval:
    a = get_approval_or_404(s, approval_id, lock=True)
    if a.status != "REVISION_REQUESTED":
        raise ConflictError("No revision is outstanding for this document", code="INVALID_STATE")
    h = a.item_history
    if h.submitted_by_id != ctx.user_id and not ctx.is_admin:
        raise AuthorizationError("Only the submitter or an admin can resolve a revision request.")

    open_revs = [r for r in a.revisions if r.resolved_at is None]
    if not open_revs:
        raise ConflictError("No open revision request found", code="INVALID_STATE")
    rev = max(open_revs, key=lambda r: r.revision_number)

    now = datetime.utcnow()
    rev.resolved_at = now
    rev.resolved_by_id = ctx.user_id
    rev.resolution_note = clean_text(note)
    a.status = rev.requested_stage
    a.updated_at = now
    s.flush()

    attach_document(s, h, generator=generator, signatures=signatures_for(a))
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="qc_document.resolve_revision",
        entity_type="QCDocumentApproval",
        entity_id=str(a.id),
        reason=rev.resolution_note,
        metadata={"item_history_id": a.item_history_id, "returned_to": a.status, "revision_number": rev.revision_number},
    )
    return a


# --- Listings ---


def _visible_statuses(ctx: AuthContext) -> list[str]:
    statuses: list[str] = []
    if ctx.is_qc:
        statuses.append("PENDING_QC")
    if ctx.is_pm:
        statuses.append("PENDING_PM")
    return statuses


def get_pending_qc_approvals(s: Session, ctx: AuthContext) -> list[QCDocumentApproval]:
    if not ctx.is_qc:
        raise AuthorizationError("QC qualification required", code="QC_REQUIRED")
    return list(
        s.scalars(
            select(QCDocumentApproval)
            .where(QCDocumentApproval.status == "PENDING_QC")
            .order_by(QCDocumentApproval.created_at.desc(), QCDocumentApproval.id.desc())
        )
    )


def get_pending_pm_approvals(s: Session, ctx: AuthContext) -> list[QCDocumentApproval]:
    if not ctx.is_pm:
        raise AuthorizationError("PM qualification required", code="PM_REQUIRED")
    return list(
        s.scalars(
            select(QCDocumentApproval)
            .where(QCDocumentApproval.status == "PENDING_PM")
            .order_by(QCDocumentApproval.created_at.desc(), QCDocumentApproval.id.desc())
        )
    )


def get_qc_document_approvals(s: Session, ctx: AuthContext) -> list[QCDocumentApproval]:
    statuses = _visible_statuses(ctx)
    if not statuses:
        return []
    return list(
        s.scalars(
            select(QCDocumentApproval)
            .where(QCDocumentApproval.status.in_(statuses))
            .order_by(QCDocumentApproval.created_at.desc(), QCDocumentApproval.id.desc())
        )
    )


def pending_qc_document_count(s: Session, ctx: AuthContext) -> int:
    statuses = _visible_statuses(ctx)
    if not statuses:
        return 0
    return int(
        s.scalar(select(func.count(QCDocumentApproval.id)).where(QCDocumentApproval.status.in_(statuses))) or 0
    )


def revision_to_dict(r: QCRevisionRequest, *, raw_dates: bool = False) -> dict[str, Any]:
    return {
        "id": r.id,
        "revision_number": r.revision_number,
        "requested_stage": r.requested_stage,
        "requested_by": r.requester_name,
        "requested_at": r.requested_at if raw_dates else iso(r.requested_at),
        "request_note": r.request_note,
        "resolved_at": r.resolved_at if raw_dates else iso(r.resolved_at),
        "resolution_note": r.resolution_note,
    }


def approval_to_dict(a: QCDocumentApproval) -> dict[str, Any]:
    h = a.item_history
    return {
        "id": a.id,
        "status": a.status,
        "item_history_id": a.item_history_id,
        "item_full_id": h.item_full_id if h else None,
        "item_title": h.item_title if h else None,
        "version": h.version if h else None,
        "change_type": h.change_type if h else None,
        "iso_doc_path": h.iso_doc_path if h else None,
        "qc_approver": a.qc_approver_name,
        "qc_approved_at": iso(a.qc_approved_at),
        "qc_note": a.qc_note,
        "pm_approver": a.pm_approver_name,
        "pm_approved_at": iso(a.pm_approved_at),
        "pm_note": a.pm_note,
        "revision_count": a.revision_count,
        "revisions": [revision_to_dict(r) for r in a.revisions],
        "created_at": iso(a.created_at),
    }
