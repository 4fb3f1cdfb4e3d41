import pytest
from werkzeug.security import generate_password_hash

from app.rdms import create_app
from app.rdms.db import session_scope
from app.rdms.errors import AuthorizationError, ConflictError, ValidationError
from app.rdms.models import Base, User
from app.rdms.modules.change_requests.engine import approve_request
from app.rdms.modules.change_requests.service import submit_create_item
from app.rdms.modules.items.models import Project
from app.rdms.modules.items.service import create_project
from app.rdms.modules.notifications.models import Notification
from app.rdms.modules.qc_documents.models import QCDocumentApproval
from app.rdms.modules.qc_documents.service import (
    approve_as_pm,
    approve_as_qc,
    get_pending_pm_approvals,
    get_pending_qc_approvals,
    get_qc_document_approvals,
    pending_qc_document_count,
    reject_qc_document,
    request_revision,
    resolve_revision,
)
from app.rdms.rbac import AuthContext

USERS = [
    ("admin", "ADMIN", True, True),
    ("editor", "EDITOR", False, False),
    ("inspector", "INSPECTOR", False, False),
    ("qc", "INSPECTOR", True, False),
    ("pm", "INSPECTOR", False, True),
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


def _approved_change(app, submitter="editor", reviewer="inspector") -> int:
    """Run one CREATE through review; return the QC approval id it produced."""
    with session_scope(app) as s:
        pid = create_project(s, _ctx(s, "admin"), title="Plan", code_prefix=f"P{s.query(Project).count() + 1}").id
    with session_scope(app) as s:
        rid = submit_create_item(s, _ctx(s, submitter), project_id=pid, title="Scope", content="<p>body</p>").id
    with session_scope(app) as s:
        return approve_request(s, rid, _ctx(s, reviewer)).history.qc_approval.id


def _notifications(s, username: str, type_: str) -> list[Notification]:
    user = s.query(User).filter(User.username == username).one()
    return s.query(Notification).filter(Notification.user_id == user.id, Notification.type == type_).all()


def test_qc_then_pm_sign_off_completes_document(app, tmp_path):
    aid = _approved_change(app)

    with session_scope(app) as s:
        a = approve_as_qc(s, aid, _ctx(s, "qc"), "  ")
        assert a.status == "PENDING_PM"
        assert a.qc_note == "Approved"
        assert a.qc_approver_name == "qc"

    with session_scope(app) as s:
        a = approve_as_pm(s, aid, _ctx(s, "pm"), "ship it")
        assert a.status == "APPROVED"
        assert a.pm_note == "ship it"

    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, aid)
        path = a.item_history.iso_doc_path
        assert path
        text = (tmp_path / "storage" / path).read_text(encoding="utf-8")
        assert "QC: qc" in text
        assert "PM: pm" in text
        assert "ship it" in text

        completed = _notifications(s, "editor", "COMPLETED")
        assert len(completed) == 1
        assert completed[0].qc_approval_id == aid


def test_stage_order_and_qualifications_are_enforced(app):
    aid = _approved_change(app)

    with pytest.raises(ConflictError) as exc:
        with session_scope(app) as s:
            approve_as_pm(s, aid, _ctx(s, "pm"))
    assert exc.value.code == "INVALID_STATE"

    with pytest.raises(AuthorizationError) as exc:
        with session_scope(app) as s:
            approve_as_qc(s, aid, _ctx(s, "pm"))
    assert exc.value.code == "QC_REQUIRED"

    with session_scope(app) as s:
        approve_as_qc(s, aid, _ctx(s, "qc"))

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            approve_as_qc(s, aid, _ctx(s, "qc"))
    with pytest.raises(AuthorizationError) as exc:
        with session_scope(app) as s:
            approve_as_pm(s, aid, _ctx(s, "qc"))
    assert exc.value.code == "PM_REQUIRED"


def test_submitter_cannot_sign_own_document_unless_admin(app):
    aid = _approved_change(app, submitter="qc", reviewer="inspector")
    with pytest.raises(AuthorizationError) as exc:
        with session_scope(app) as s:
            approve_as_qc(s, aid, _ctx(s, "qc"))
    assert exc.value.code == "SELF_APPROVAL_FORBIDDEN"

    admin_aid = _approved_change(app, submitter="admin", reviewer="inspector")
    with session_scope(app) as s:
        assert approve_as_qc(s, admin_aid, _ctx(s, "admin")).status == "PENDING_PM"
        assert approve_as_pm(s, admin_aid, _ctx(s, "admin")).status == "APPROVED"


def test_revision_round_trip_returns_to_requesting_stage(app):
    aid = _approved_change(app)

    with session_scope(app) as s:
        rev = request_revision(s, aid, _ctx(s, "qc"), "wrong clause number")
        assert rev.revision_number == 1
        assert rev.requested_stage == "PENDING_QC"
    with session_scope(app) as s:
        a = s.get(QCDocumentApproval, aid)
        assert a.status == "REVISION_REQUESTED"
        assert a.revision_count == 1
        assert len(_notifications(s, "editor", "REVISION_REQUEST")) == 1

    with pytest.raises(AuthorizationError):
        with session_scope(app) as s:
            resolve_revision(s, aid, _ctx(s, "qc"), "done")

    with session_scope(app) as s:
        a = resolve_revision(s, aid, _ctx(s, "editor"), "fixed")
        assert a.status == "PENDING_QC"
        assert a.revisions[0].resolution_note == "fixed"
        assert a.revisions[0].resolved_at is not None

    with session_scope(app) as s:
        approve_as_qc(s, aid, _ctx(s, "qc"))
    with session_scope(app) as s:
        rev = request_revision(s, aid, _ctx(s, "pm"), "missing signature block")
        assert rev.revision_number == 2
    with session_scope(app) as s:
        a = resolve_revision(s, aid, _ctx(s, "admin"))
        assert a.status == "PENDING_PM"

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            resolve_revision(s, aid, _ctx(s, "editor"))


def test_revision_request_needs_note_and_stage_role(app):
    aid = _approved_change(app)
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            request_revision(s, aid, _ctx(s, "qc"), "   ")
    with pytest.raises(AuthorizationError):
        with session_scope(app) as s:
            request_revision(s, aid, _ctx(s, "pm"), "not my stage")


def test_reject_records_stage_note_and_is_terminal(app):
    aid = _approved_change(app)
    with pytest.raises(ValidationError):
        with session_scope(app) as s:
            reject_qc_document(s, aid, _ctx(s, "qc"), "")

    with session_scope(app) as s:
        approve_as_qc(s, aid, _ctx(s, "qc"))
    with session_scope(app) as s:
        a = reject_qc_document(s, aid, _ctx(s, "pm"), "out of scope")
        assert a.status == "REJECTED"
        assert a.pm_note == "out of scope"
        assert a.pm_approver_name == "pm"

    with pytest.raises(ConflictError):
        with session_scope(app) as s:
            request_revision(s, aid, _ctx(s, "pm"), "too late")


def test_listings_follow_qualifications(app):
    first = _approved_change(app)
    second = _approved_change(app)
    with session_scope(app) as s:
        approve_as_qc(s, first, _ctx(s, "qc"))

    with session_scope(app) as s:
        assert [a.id for a in get_pending_qc_approvals(s, _ctx(s, "qc"))] == [second]
        assert [a.id for a in get_pending_pm_approvals(s, _ctx(s, "pm"))] == [first]
        assert {a.id for a in get_qc_document_approvals(s, _ctx(s, "admin"))} == {first, second}
        assert pending_qc_document_count(s, _ctx(s, "qc")) == 1
        assert pending_qc_document_count(s, _ctx(s, "admin")) == 2
        assert pending_qc_document_count(s, _ctx(s, "viewer")) == 0
        assert get_qc_document_approvals(s, _ctx(s, "inspector")) == []

        with pytest.raises(AuthorizationError):
            get_pending_pm_approvals(s, _ctx(s, "qc"))
        with pytest.raises(AuthorizationError):
            get_pending_qc_approvals(s, _ctx(s, "pm"))
