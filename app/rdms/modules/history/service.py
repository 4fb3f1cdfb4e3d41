from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.rdms.errors import NotFoundError, ValidationError
from app.rdms.modules.items.models import Item, Project
from app.rdms.modules.items.service import natural_key
from app.rdms.modules.qc_documents.generator import DocumentGenerator
from app.rdms.modules.qc_documents.service import attach_document, create_qc_approval
from app.rdms.utils import iso

from .diff import compute_diff
from .models import CHANGE_TYPES, ItemHistory

if TYPE_CHECKING:
    from app.rdms.modules.change_requests.models import ChangeRequest
    from app.rdms.rbac import AuthContext

logger = logging.getLogger(__name__)


def record_history(
    s: Session,
    item: Item,
    snapshot: dict[str, Any],
    change_type: str,
    *,
    change_request: "ChangeRequest",
    reviewer: "AuthContext",
    review_note: str | None = None,
    old_snapshot: dict[str, Any] | None = None,
    generator: DocumentGenerator | None = None,
) -> ItemHistory:
    """
    Append the history row for one approved item change.

    UPDATE and DELETE bump the item's version; CREATE records the version the
    item was created with. The QC approval row is always created; document
    generation may fail without affecting the history write.
    """
    if change_type not in CHANGE_TYPES:
        raise ValidationError(f"Invalid change type: {change_type}")

    diff = compute_diff(old_snapshot, snapshot) if change_type == "UPDATE" and old_snapshot is not None else None

    new_version = item.current_version
    if change_type in ("UPDATE", "DELETE"):
        new_version = item.current_version + 1

    h = ItemHistory(
        item_id=item.id,
        version=new_version,
        change_type=change_type,
        snapshot=json.dumps(snapshot, sort_keys=True),
        diff=json.dumps(diff, sort_keys=True) if diff else None,
        submitted_by_id=change_request.submitted_by_id,
        submitter_name=change_request.submitter_display,
        submit_reason=change_request.submit_reason,
        reviewed_by_id=reviewer.user_id,
        reviewer_name=reviewer.username,
        review_note=review_note,
        change_request_id=change_request.id,
        item_full_id=item.full_id,
        item_title=snapshot.get("title") or item.title,
        project_id=item.project_id,
    )
    s.add(h)
    item.current_version = new_version
    s.flush()

    create_qc_approval(s, h)
    attach_document(s, h, generator=generator)

    logger.info(
        "History recorded: item=%s v%s %s (change_request=%s)",
        item.full_id,
        new_version,
        change_type,
        change_request.id,
    )
    return h


# --- Queries ---


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw else None


def history_to_dict(h: ItemHistory, *, detail: bool = False) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": h.id,
        "item_id": h.item_id,
        "version": h.version,
        "change_type": h.change_type,
        "item_full_id": h.item_full_id,
        "item_title": h.item_title,
        "project_id": h.project_id,
        "submitter": h.submitter_name,
        "reviewer": h.reviewer_name,
        "submit_reason": h.submit_reason,
        "review_note": h.review_note,
        "change_request_id": h.change_request_id,
        "iso_doc_path": h.iso_doc_path,
        "qc_status": h.qc_approval.status if h.qc_approval else None,
        "created_at": iso(h.created_at),
    }
    if detail:
        out["snapshot"] = _loads(h.snapshot)
        out["diff"] = _loads(h.diff)
    return out


def get_item_history(s: Session, item_id: int) -> list[ItemHistory]:
    return list(
        s.scalars(
            select(ItemHistory)
            .where(ItemHistory.item_id == item_id)
            .order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())
        )
    )


def get_history_detail(s: Session, history_id: int) -> ItemHistory:
    h = s.get(ItemHistory, history_id)
    if not h:
        raise NotFoundError("History record not found")
    return h


def get_global_history(
    s: Session,
    *,
    project_id: int | None = None,
    change_type: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> list[ItemHistory]:
    q = select(ItemHistory)
    if project_id:
        q = q.where(ItemHistory.project_id == project_id)
    if change_type and change_type != "ALL":
        q = q.where(ItemHistory.change_type == change_type)
    if date_from:
        q = q.where(ItemHistory.created_at >= date_from)
    if date_to:
        q = q.where(ItemHistory.created_at <= date_to)
    return list(s.scalars(q.order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())))


def get_project_history_stats(s: Session) -> list[dict[str, Any]]:
    item_counts = dict(
        s.execute(select(Item.project_id, func.count(Item.id)).group_by(Item.project_id)).all()
    )
    last_changes = dict(
        s.execute(
            select(ItemHistory.project_id, func.max(ItemHistory.created_at)).group_by(ItemHistory.project_id)
        ).all()
    )
    out = []
    for p in s.scalars(select(Project).order_by(Project.code_prefix.asc())):
        out.append(
            {
                "id": p.id,
                "title": p.title,
                "code_prefix": p.code_prefix,
                "item_count": int(item_counts.get(p.id, 0)),
                "last_change_at": iso(last_changes.get(p.id)),
            }
        )
    return out


def get_project_items(s: Session, project_id: int) -> list[dict[str, Any]]:
    """
    Every item that ever had history in the project, deleted ones included,
    in natural fullId order.
    """
    rows = list(
        s.scalars(
            select(ItemHistory)
            .where(ItemHistory.project_id == project_id)
            .order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())
        )
    )
    latest: dict[str, ItemHistory] = {}
    counts: dict[str, int] = {}
    for h in rows:
        counts[h.item_full_id] = counts.get(h.item_full_id, 0) + 1
        latest.setdefault(h.item_full_id, h)

    out = [
        {
            "full_id": full_id,
            "title": h.item_title,
            "is_deleted": h.item_id is None or h.change_type == "DELETE",
            "history_count": counts[full_id],
        }
        for full_id, h in latest.items()
    ]
    out.sort(key=lambda r: natural_key(r["full_id"]))
    return out


def get_item_history_by_full_id(s: Session, project_id: int, item_full_id: str) -> list[ItemHistory]:
    return list(
        s.scalars(
            select(ItemHistory)
            .where(ItemHistory.project_id == project_id, ItemHistory.item_full_id == item_full_id)
            .order_by(ItemHistory.created_at.desc(), ItemHistory.id.desc())
        )
    )
