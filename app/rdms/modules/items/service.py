"""
Items, projects and related-item edges.

Items are only created/changed/soft-deleted by the approval engine; this module
provides the building blocks it uses (fullId allocation, edge upserts,
snapshots) plus the direct project operations that need no approval.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.rdms.audit import record_event
from app.rdms.constants import TITLE_MAX_LENGTH
from app.rdms.errors import ConflictError, NotFoundError, ValidationError
from app.rdms.rbac import AuthContext

from .models import Item, ItemRelation, Project

logger = logging.getLogger(__name__)

CODE_PREFIX_RE = re.compile(r"^[A-Z0-9]+(-[A-Z0-9]+)*$")


def natural_key(full_id: str) -> list[Any]:
    """Sort key so "P-2" < "P-10"."""
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", full_id or "")]


def serialize_attachments(attachments: list | None) -> str | None:
    if not attachments:
        return None
    return json.dumps(attachments)


def parse_attachments(raw: str | None) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return value if isinstance(value, list) else []


def get_project_or_404(s: Session, project_id: int | None) -> Project:
    p = s.get(Project, project_id) if project_id else None
    if not p:
        raise NotFoundError("Project not found")
    return p


def get_item_or_404(s: Session, item_id: int | None) -> Item:
    it = s.get(Item, item_id) if item_id else None
    if not it:
        raise NotFoundError("Item not found")
    return it


def active_child_count(s: Session, item_id: int) -> int:
    return int(
        s.scalar(select(func.count(Item.id)).where(Item.parent_id == item_id, Item.is_deleted.is_(False))) or 0
    )


def project_item_count(s: Session, project_id: int) -> int:
    # Soft-deleted items count: their history still points at the project.
    return int(s.scalar(select(func.count(Item.id)).where(Item.project_id == project_id)) or 0)


def next_item_full_id(s: Session, project: Project, parent: Item | None = None) -> str:
    """
    Allocate the next fullId under (project, parent).

    Top-level items are "<code_prefix>-<n>", children "<parent.full_id>-<n>".
    Soft-deleted siblings still hold their number, so numbers are never reused.
    """
    prefix = parent.full_id if parent else project.code_prefix
    q = select(Item.full_id).where(Item.project_id == project.id)
    if parent is not None:
        q = q.where(Item.parent_id == parent.id)
    else:
        q = q.where(Item.parent_id.is_(None))

    highest = 0
    for fid in s.scalars(q):
        tail = fid[len(prefix) + 1 :] if fid.startswith(prefix + "-") else ""
        if tail.isdigit():
            highest = max(highest, int(tail))

    n = highest + 1
    while True:
        candidate = f"{prefix}-{n}"
        taken = s.scalar(select(Item.id).where(Item.full_id == candidate))
        if not taken:
            return candidate
        n += 1


# --- Related-item edges ---


def _insert_direction(s: Session, source_id: int, target_id: int, description: str | None) -> bool:
    exists = s.scalar(
        select(ItemRelation.id).where(ItemRelation.source_id == source_id, ItemRelation.target_id == target_id)
    )
    if exists:
        return False
    try:
        with s.begin_nested():
            s.add(ItemRelation(source_id=source_id, target_id=target_id, description=description))
            s.flush()
    except IntegrityError:
        # Lost a race with a concurrent insert of the same pair.
        logger.debug("Duplicate item relation ignored (%s -> %s)", source_id, target_id)
        return False
    return True


def upsert_edge(s: Session, a_id: int, b_id: int, description: str | None = None) -> bool:
    """
    Ensure the undirected edge a <-> b exists (both directions).
    Idempotent; returns True if any row was inserted.
    """
    if a_id == b_id:
        raise ValidationError("An item cannot be related to itself.")
    created_ab = _insert_direction(s, a_id, b_id, description)
    created_ba = _insert_direction(s, b_id, a_id, description)
    return created_ab or created_ba


def remove_edge(s: Session, a_id: int, b_id: int) -> int:
    res = s.execute(
        delete(ItemRelation).where(
            or_(
                (ItemRelation.source_id == a_id) & (ItemRelation.target_id == b_id),
                (ItemRelation.source_id == b_id) & (ItemRelation.target_id == a_id),
            )
        )
    )
    return res.rowcount or 0


def remove_all_edges(s: Session, item_id: int) -> int:
    res = s.execute(
        delete(ItemRelation).where(or_(ItemRelation.source_id == item_id, ItemRelation.target_id == item_id))
    )
    return res.rowcount or 0


def update_edge_description(s: Session, a_id: int, b_id: int, description: str | None) -> int:
    res = s.execute(
        update(ItemRelation)
        .where(
            or_(
                (ItemRelation.source_id == a_id) & (ItemRelation.target_id == b_id),
                (ItemRelation.source_id == b_id) & (ItemRelation.target_id == a_id),
            )
        )
        .values(description=description or None)
    )
    return res.rowcount or 0


def get_related_items(s: Session, item_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(ItemRelation, Item, Project)
        .join(Item, Item.id == ItemRelation.target_id)
        .join(Project, Project.id == Item.project_id)
        .where(ItemRelation.source_id == item_id)
        .order_by(ItemRelation.created_at.asc(), ItemRelation.id.asc())
    ).all()
    return [
        {
            "id": target.id,
            "full_id": target.full_id,
            "title": target.title,
            "project_id": target.project_id,
            "project_title": project.title,
            "description": rel.description,
        }
        for rel, target, project in rows
    ]


def build_snapshot(s: Session, item: Item) -> dict[str, Any]:
    """Point-in-time projection of an item used by history records."""
    rows = s.execute(
        select(Item.id, Item.full_id)
        .join(ItemRelation, ItemRelation.target_id == Item.id)
        .where(ItemRelation.source_id == item.id)
        .order_by(ItemRelation.id.asc())
    ).all()
    return {
        "title": item.title,
        "content": item.content,
        "attachments": item.attachments,
        "related_items": [{"id": rid, "full_id": fid} for rid, fid in rows],
    }


# --- Projects ---


def create_project(
    s: Session,
    ctx: AuthContext,
    *,
    title: str,
    code_prefix: str,
    description: str | None = None,
) -> Project:
    """Projects are created directly; only their later edits go through approval."""
    ctx.require("projects.create", "Unauthorized: only admins and editors can create projects.")
    title = (title or "").strip()
    code_prefix = (code_prefix or "").strip()
    if not title or not code_prefix:
        raise ValidationError("Title and code prefix are required.")
    if len(title) > TITLE_MAX_LENGTH:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LENGTH} characters.")
    if not CODE_PREFIX_RE.match(code_prefix):
        raise ValidationError("Code prefix may only contain uppercase letters, digits and hyphens.")
    if s.scalar(select(Project.id).where(Project.code_prefix == code_prefix)):
        raise ConflictError("Code prefix already exists.", code="DUPLICATE_CODE_PREFIX")

    p = Project(title=title, code_prefix=code_prefix, description=(description or "").strip() or None)
    s.add(p)
    s.flush()

    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="project.create",
        entity_type="Project",
        entity_id=str(p.id),
        metadata={"code_prefix": p.code_prefix, "title": p.title},
    )
    return p


def get_project_tree(s: Session, project_id: int) -> dict[str, Any]:
    project = get_project_or_404(s, project_id)
    items = s.scalars(
        select(Item).where(Item.project_id == project.id, Item.is_deleted.is_(False))
    ).all()

    nodes: dict[int, dict[str, Any]] = {
        it.id: {"id": it.id, "full_id": it.full_id, "title": it.title, "current_version": it.current_version, "children": []}
        for it in items
    }
    roots: list[dict[str, Any]] = []
    for it in items:
        node = nodes[it.id]
        if it.parent_id and it.parent_id in nodes:
            nodes[it.parent_id]["children"].append(node)
        else:
            roots.append(node)

    def _sort(children: list[dict[str, Any]]) -> None:
        children.sort(key=lambda n: natural_key(n["full_id"]))
        for c in children:
            _sort(c["children"])

    _sort(roots)
    return {
        "id": project.id,
        "title": project.title,
        "description": project.description,
        "code_prefix": project.code_prefix,
        "items": roots,
    }


def item_to_dict(s: Session, item: Item) -> dict[str, Any]:
    return {
        "id": item.id,
        "full_id": item.full_id,
        "title": item.title,
        "content": item.content,
        "attachments": parse_attachments(item.attachments),
        "project_id": item.project_id,
        "parent_id": item.parent_id,
        "current_version": item.current_version,
        "is_deleted": item.is_deleted,
        "published_at": item.published_at.isoformat() if item.published_at else None,
        "related_items": get_related_items(s, item.id),
    }


def list_projects(s: Session) -> list[Project]:
    return list(s.scalars(select(Project).order_by(Project.code_prefix.asc())))


def project_to_dict(p: Project) -> dict[str, Any]:
    return {
        "id": p.id,
        "title": p.title,
        "description": p.description,
        "code_prefix": p.code_prefix,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }


# --- Direct relation edits (reviewers only) ---


def _live_pair(s: Session, a_id: int, b_id: int) -> tuple[Item, Item]:
    a = get_item_or_404(s, a_id)
    b = get_item_or_404(s, b_id)
    if a.is_deleted or b.is_deleted:
        raise NotFoundError("Item not found")
    return a, b


def relate_items(s: Session, ctx: AuthContext, a_id: int, b_id: int, description: str | None = None) -> bool:
    ctx.require("requests.review", "Unauthorized: only reviewers can edit relations directly.")
    a, b = _live_pair(s, a_id, b_id)
    created = upsert_edge(s, a.id, b.id, (description or "").strip() or None)
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="item.relate",
        entity_type="Item",
        entity_id=str(a.id),
        metadata={"source": a.full_id, "target": b.full_id, "created": created},
    )
    return created


def unrelate_items(s: Session, ctx: AuthContext, a_id: int, b_id: int) -> int:
    ctx.require("requests.review", "Unauthorized: only reviewers can edit relations directly.")
    a, b = _live_pair(s, a_id, b_id)
    removed = remove_edge(s, a.id, b.id)
    record_event(
        s,
        actor_id=ctx.user_id,
        actor_username=ctx.username,
        action="item.unrelate",
        entity_type="Item",
        entity_id=str(a.id),
        metadata={"source": a.full_id, "target": b.full_id, "removed": removed},
    )
    return removed


def describe_relation(s: Session, ctx: AuthContext, a_id: int, b_id: int, description: str | None) -> int:
    ctx.require("requests.review", "Unauthorized: only reviewers can edit relations directly.")
    a, b = _live_pair(s, a_id, b_id)
    updated = update_edge_description(s, a.id, b.id, (description or "").strip() or None)
    if not updated:
        raise NotFoundError("Relation not found")
    return updated
