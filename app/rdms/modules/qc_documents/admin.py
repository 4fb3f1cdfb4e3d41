from __future__ import annotations

import mimetypes

from flask import Blueprint, current_app, send_file

from app.rdms.db import db_session
from app.rdms.errors import NotFoundError
from app.rdms.modules.qc_documents.service import (
    approval_to_dict,
    approve_as_pm,
    approve_as_qc,
    get_approval_or_404,
    get_pending_pm_approvals,
    get_pending_qc_approvals,
    get_qc_document_approvals,
    pending_qc_document_count,
    reject_qc_document,
    request_revision,
    resolve_revision,
    revision_to_dict,
)
from app.rdms.rbac import current_context, require_permission
from app.rdms.storage import StorageError, storage_from_config
from app.rdms.utils import json_body, ok

bp = Blueprint("qc_documents", __name__)


@bp.get("/qc-documents")
@require_permission("history.view")
def approvals_list():
    s = db_session()
    return ok([approval_to_dict(a) for a in get_qc_document_approvals(s, current_context())])


@bp.get("/qc-documents/pending-qc")
@require_permission("history.view")
def pending_qc():
    s = db_session()
    return ok([approval_to_dict(a) for a in get_pending_qc_approvals(s, current_context())])


@bp.get("/qc-documents/pending-pm")
@require_permission("history.view")
def pending_pm():
    s = db_session()
    return ok([approval_to_dict(a) for a in get_pending_pm_approvals(s, current_context())])


@bp.get("/qc-documents/count")
@require_permission("history.view")
def pending_count():
    s = db_session()
    return ok({"count": pending_qc_document_count(s, current_context())})


@bp.get("/qc-documents/<int:approval_id>")
@require_permission("history.view")
def approval_detail(approval_id: int):
    s = db_session()
    return ok(approval_to_dict(get_approval_or_404(s, approval_id)))


@bp.get("/qc-documents/<int:approval_id>/document")
@require_permission("history.view")
def download_document(approval_id: int):
    s = db_session()
    a = get_approval_or_404(s, approval_id)
    key = a.item_history.iso_doc_path if a.item_history else None
    if not key:
        raise NotFoundError("QC document has not been generated")
    try:
        fh = storage_from_config(current_app.config).open(key)
    except StorageError as e:
        current_app.logger.warning("QC document %s unavailable: %s", key, e)
        raise NotFoundError("QC document file is missing from storage") from e
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fh, mimetype=mimetype, as_attachment=True, download_name=key.rsplit("/", 1)[-1])


@bp.post("/qc-documents/<int:approval_id>/approve-qc")
@require_permission("history.view")
def qc_approve(approval_id: int):
    s = db_session()
    a = approve_as_qc(s, approval_id, current_context(), json_body().get("note"))
    s.commit()
    return ok(approval_to_dict(a))


@bp.post("/qc-documents/<int:approval_id>/approve-pm")
@require_permission("history.view")
def pm_approve(approval_id: int):
    s = db_session()
    a = approve_as_pm(s, approval_id, current_context(), json_body().get("note"))
    s.commit()
    return ok(approval_to_dict(a))


@bp.post("/qc-documents/<int:approval_id>/reject")
@require_permission("history.view")
def reject(approval_id: int):
    s = db_session()
    a = reject_qc_document(s, approval_id, current_context(), json_body().get("note") or "")
    s.commit()
    return ok(approval_to_dict(a))


@bp.post("/qc-documents/<int:approval_id>/request-revision")
@require_permission("history.view")
def revision_request(approval_id: int):
    s = db_session()
    rev = request_revision(s, approval_id, current_context(), json_body().get("note") or "")
    s.commit()
    return ok(revision_to_dict(rev), 201)


@bp.post("/qc-documents/<int:approval_id>/resolve-revision")
@require_permission("history.view")
def revision_resolve(approval_id: int):
    s = db_session()
    a = resolve_revision(s, approval_id, current_context(), json_body().get("note"))
    s.commit()
    return ok(approval_to_dict(a))
