from __future__ import annotations

from flask import Blueprint

from app.rdms.db import db_session
from app.rdms.modules.items.service import (
    create_project,
    describe_relation,
    get_item_or_404,
    get_project_tree,
    get_related_items,
    item_to_dict,
    list_projects,
    project_to_dict,
    relate_items,
    unrelate_items,
)
from app.rdms.rbac import current_context, require_permission
from app.rdms.utils import json_body, ok

bp = Blueprint("items", __name__)


@bp.get("/projects")
@require_permission("items.view")
def projects_list():
    s = db_session()
    return ok([project_to_dict(p) for p in list_projects(s)])


@bp.post("/projects")
@require_permission("projects.create")
def projects_create():
    s = db_session()
    body = json_body()
    p = create_project(
        s,
        current_context(),
        title=body.get("title") or "",
        code_prefix=body.get("code_prefix") or "",
        description=body.get("description"),
    )
    s.commit()
    return ok(project_to_dict(p), 201)


@bp.get("/projects/<int:project_id>")
@require_permission("items.view")
def project_detail(project_id: int):
    s = db_session()
    return ok(get_project_tree(s, project_id))


@bp.get("/items/<int:item_id>")
@require_permission("items.view")
def item_detail(item_id: int):
    s = db_session()
    return ok(item_to_dict(s, get_item_or_404(s, item_id)))


@bp.get("/items/<int:item_id>/relations")
@require_permission("items.view")
def item_relations(item_id: int):
    s = db_session()
    get_item_or_404(s, item_id)
    return ok(get_related_items(s, item_id))


@bp.post("/items/<int:item_id>/relations/<int:other_id>")
@require_permission("requests.review")
def relation_upsert(item_id: int, other_id: int):
    s = db_session()
    created = relate_items(s, current_context(), item_id, other_id, json_body().get("description"))
    s.commit()
    return ok({"created": created})


@bp.patch("/items/<int:item_id>/relations/<int:other_id>")
@require_permission("requests.review")
def relation_describe(item_id: int, other_id: int):
    s = db_session()
    describe_relation(s, current_context(), item_id, other_id, json_body().get("description"))
    s.commit()
    return ok()


@bp.delete("/items/<int:item_id>/relations/<int:other_id>")
@require_permission("requests.review")
def relation_remove(item_id: int, other_id: int):
    s = db_session()
    removed = unrelate_items(s, current_context(), item_id, other_id)
    s.commit()
    return ok({"removed": removed})
