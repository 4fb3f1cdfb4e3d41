import json

import pytest
from werkzeug.security import generate_password_hash

from app.rdms import create_app
from app.rdms.db import session_scope
from app.rdms.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.rdms.models import AuditEvent, Base, User
from app.rdms.modules.change_requests.chain import build_review_timeline, get_request_chain
from app.rdms.modules.change_requests.engine import approve_request, reject_request
from app.rdms.modules.change_requests.models import ChangeRequest
from app.rdms.modules.change_requests.service import (
    cancel_request,
    get_pending_requests,
    get_rejected_request_detail,
    get_rejected_requests,
    mark_resubmitted,
    pending_request_count,
    rejected_request_count,
    resubmit_request,
    submit_change_request,
    submit_create_item,
    submit_delete_item,
    submit_update_item,
)
from app.rdms.modules.items.service import create_project
from app.rdms.modules.notifications.models import Notification
from app.rdms.rbac import AuthContext

USERS = [
    ("admin", "ADMIN", True, True),
    ("editor", "EDITOR", False, False),
    ("editor2", "EDITOR", False, False),
    ("inspector", "INSPECTOR", False, False),
    ("viewer", "VIEWER", False, False),
]


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        for username, role, is_qc, is_pm in USERS:
            s.add(
                User(
                    username=username,
                    password_hash=generate_password_hash("pw"),
                    role=role,
                    is_qc=is_qc,
                    is_pm=is_pm,
                    is_active=True,
                )
            )
    return app


def _ctx(s, username: str) -> AuthContext:
    return AuthContext.for_user(s.query(User).filter(User.username == username).one())


@pytest.fixture()
def project_id(app):
    with session_scope(app) as s:
        return create_project(s, _ctx(s, "editor"), title="Device Master Record", code_prefix="DMR").id


def _rejected(app, project_id, title="Draft", note="fix title") -> int:
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title=title).id
    with session_scope(app) as s:
        reject_request(s, rid, _ctx(s, "inspector"), note)
    return rid


# --- Submission ---


def test_submit_create_stores_pending_request(app, project_id):
    with session_scope(app) as s:
        cr = submit_create_item(
            s,
            _ctx(s, "editor"),
            project_id=project_id,
            title="  Labeling  ",
            submit_reason="new requirement",
        )
        rid = cr.id

    with session_scope(app) as s:
        cr = s.get(ChangeRequest, rid)
        assert cr.status == "PENDING"
        assert cr.type == "CREATE"
        assert cr.target_project_id == project_id
        assert cr.submitter_name == "editor"
        assert cr.submit_reason == "new requirement"
        assert json.loads(cr.data)["title"] == "Labeling"
        assert s.query(AuditEvent).filter(AuditEvent.action == "change_request.submit").count() == 1


def test_viewer_cannot_submit(app, project_id):
    with pytest.raises(AuthorizationError):
        with session_scope(app) as s:
            submit_create_item(s, _ctx(s, "viewer"), project_id=project_id, title="T")


def test_submit_validates_targets(app, project_id):
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="  ")
        with pytest.raises(NotFoundError):
            submit_create_item(s, _ctx(s, "editor"), project_id=9999, title="T")
        with pytest.raises(NotFoundError):
            submit_create_item(s, _ctx(s, "editor"), project_id=project_id, parent_id=9999, title="T")
        with pytest.raises(NotFoundError):
            submit_update_item(s, _ctx(s, "editor"), item_id=9999, title="T")
        with pytest.raises(ValidationError):
            submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="T", related_items=[9999])
        with pytest.raises(ValidationError):
            submit_change_request(s, _ctx(s, "editor"), "ARCHIVE", {"title": "T"})
        with pytest.raises(NotFoundError):
            submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="T", previous_request_id=9999)


def test_parent_must_belong_to_same_project(app, project_id):
    with session_scope(app) as s:
        other = create_project(s, _ctx(s, "admin"), title="Other", code_prefix="OTH").id
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=other, title="Foreign parent").id
    with session_scope(app) as s:
        parent_id = approve_request(s, rid, _ctx(s, "inspector")).item.id

    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            submit_create_item(s, _ctx(s, "editor"), project_id=project_id, parent_id=parent_id, title="T")


def test_update_cannot_relate_item_to_itself(app, project_id):
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="Self").id
    with session_scope(app) as s:
        item_id = approve_request(s, rid, _ctx(s, "inspector")).item.id

    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            submit_update_item(s, _ctx(s, "editor"), item_id=item_id, title="Self", related_items=[item_id])


def test_delete_of_parent_with_live_children_rejected_at_submit(app, project_id):
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="Parent").id
    with session_scope(app) as s:
        parent_id = approve_request(s, rid, _ctx(s, "inspector")).item.id
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, parent_id=parent_id, title="Child").id
    with session_scope(app) as s:
        approve_request(s, rid, _ctx(s, "inspector"))

    with pytest.raises(ConflictError) as exc:
        with session_scope(app) as s:
            submit_delete_item(s, _ctx(s, "editor"), item_id=parent_id)
    assert exc.value.code == "HAS_CHILDREN"


# --- Listings ---


def test_pending_listing_is_oldest_first_and_reviewer_only(app, project_id):
    with session_scope(app) as s:
        first = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="One").id
        second = submit_create_item(s, _ctx(s, "editor2"), project_id=project_id, title="Two").id

    with session_scope(app) as s:
        assert [cr.id for cr in get_pending_requests(s, _ctx(s, "inspector"))] == [first, second]
        assert pending_request_count(s, _ctx(s, "inspector")) == 2
        assert pending_request_count(s, _ctx(s, "editor")) == 0
        with pytest.raises(AuthorizationError):
            get_pending_requests(s, _ctx(s, "editor"))


def test_rejected_listing_is_per_submitter(app, project_id):
    rid = _rejected(app, project_id)
    with session_scope(app) as s:
        assert [cr.id for cr in get_rejected_requests(s, _ctx(s, "editor"))] == [rid]
        assert rejected_request_count(s, _ctx(s, "editor")) == 1
        assert rejected_request_count(s, _ctx(s, "editor2")) == 0

        assert get_rejected_request_detail(s, rid, _ctx(s, "admin")).id == rid
        with pytest.raises(AuthorizationError):
            get_rejected_request_detail(s, rid, _ctx(s, "editor2"))


# --- Cancel ---


def test_cancel_hard_deletes_rejected_request_and_detaches_backlinks(app, project_id):
    rid = _rejected(app, project_id)
    with session_scope(app) as s:
        new_id = resubmit_request(s, rid, _ctx(s, "editor"), {"title": "Fixed"}).id

    with session_scope(app) as s:
        # a RESUBMITTED request is no longer cancellable
        with pytest.raises(ConflictError):
            cancel_request(s, rid, _ctx(s, "editor"))

    with session_scope(app) as s:
        reject_request(s, new_id, _ctx(s, "inspector"), "still wrong")
    with session_scope(app) as s:
        cancel_request(s, new_id, _ctx(s, "editor"))

    with session_scope(app) as s:
        assert s.get(ChangeRequest, new_id) is None
        assert s.get(ChangeRequest, rid) is not None
        for n in s.query(Notification).all():
            assert n.change_request_id != new_id
        assert s.query(AuditEvent).filter(AuditEvent.action == "change_request.cancel").count() == 1


def test_cancel_requires_owner_or_admin(app, project_id):
    rid = _rejected(app, project_id)
    with pytest.raises(AuthorizationError):
        with session_scope(app) as s:
            cancel_request(s, rid, _ctx(s, "editor2"))
    with session_scope(app) as s:
        cancel_request(s, rid, _ctx(s, "admin"))
    with session_scope(app) as s:
        assert s.get(ChangeRequest, rid) is None


def test_pending_request_cannot_be_cancelled(app, project_id):
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="Pending").id
    with pytest.raises(ConflictError) as exc:
        with session_scope(app) as s:
            cancel_request(s, rid, _ctx(s, "editor"))
    assert exc.value.code == "INVALID_STATE"


# --- Resubmission ---


def test_resubmit_links_chain_and_retires_original(app, project_id):
    rid = _rejected(app, project_id)
    with session_scope(app) as s:
        new = resubmit_request(s, rid, _ctx(s, "editor"), {"title": "Draft v2"}, submit_reason="title fixed")
        new_id = new.id
        assert new.previous_request_id == rid
        assert new.status == "PENDING"

    with session_scope(app) as s:
        old = s.get(ChangeRequest, rid)
        assert old.status == "RESUBMITTED"
        editor = s.query(User).filter(User.username == "editor").one()
        n = s.query(Notification).filter(Notification.user_id == editor.id, Notification.change_request_id == rid).one()
        assert n.is_read is True

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            resubmit_request(s, rid, _ctx(s, "editor"))

    with session_scope(app) as s:
        approve_request(s, new_id, _ctx(s, "inspector"))
    with session_scope(app) as s:
        chain = get_request_chain(s, new_id)
        assert [cr.id for cr in chain] == [new_id, rid]
        rounds = build_review_timeline(chain)
        assert [[e["type"] for e in r] for r in rounds] == [
            ["SUBMISSION", "REJECTION"],
            ["RESUBMISSION", "APPROVAL"],
        ]


def test_resubmit_without_fields_reuses_payload(app, project_id):
    rid = _rejected(app, project_id, title="Unchanged")
    with session_scope(app) as s:
        new_id = resubmit_request(s, rid, _ctx(s, "editor")).id
    with session_scope(app) as s:
        assert json.loads(s.get(ChangeRequest, new_id).data)["title"] == "Unchanged"


def test_mark_resubmitted_only_once(app, project_id):
    rid = _rejected(app, project_id)
    with session_scope(app) as s:
        assert mark_resubmitted(s, rid, _ctx(s, "editor")).status == "RESUBMITTED"
    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            mark_resubmitted(s, rid, _ctx(s, "editor"))


def test_chain_stops_on_cycle(app, project_id):
    with session_scope(app) as s:
        a = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="A").id
        b = submit_create_item(s, _ctx(s, "editor"), project_id=project_id, title="B", previous_request_id=a).id
        s.get(ChangeRequest, a).previous_request_id = b

    with session_scope(app) as s:
        assert [cr.id for cr in get_request_chain(s, b)] == [b, a]
        assert len(get_request_chain(s, b, max_hops=0)) == 1
