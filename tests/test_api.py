"""
HTTP-level tests: the JSON envelope, CSRF, permission checks and one full
submit -> approve -> QC -> PM round through the blueprints.
"""

import pytest
from werkzeug.security import generate_password_hash

from app.rdms import auth, create_app
from app.rdms.db import session_scope
from app.rdms.models import Base, User
from app.rdms.modules.change_requests import engine

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
    auth._login_attempts.clear()

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


class Api:
    """Logged-in test client that sends the CSRF header on every mutation."""

    def __init__(self, app, username: str, password: str = "pw"):
        self.client = app.test_client()
        r = self.client.post("/auth/login", json={"username": username, "password": password})
        assert r.status_code == 200, r.json
        self.csrf = r.json["csrf_token"]

    def get(self, path, **kw):
        return self.client.get(path, **kw)

    def post(self, path, json=None):
        return self.client.post(path, json=json or {}, headers={"X-CSRF-Token": self.csrf})

    def patch(self, path, json=None):
        return self.client.patch(path, json=json or {}, headers={"X-CSRF-Token": self.csrf})

    def delete(self, path):
        return self.client.delete(path, headers={"X-CSRF-Token": self.csrf})


def _project(api: Api, code_prefix="SRS") -> int:
    r = api.post("/api/projects", {"title": "Software Requirements", "code_prefix": code_prefix})
    assert r.status_code == 201, r.json
    return r.json["data"]["id"]


def _create_item(editor: Api, reviewer: Api, project_id: int, title: str, **extra) -> int:
    r = editor.post("/api/requests", {"type": "CREATE", "project_id": project_id, "title": title, **extra})
    assert r.status_code == 201, r.json
    rid = r.json["data"]["id"]
    r = reviewer.post(f"/api/requests/{rid}/approve")
    assert r.status_code == 200, r.json
    return r.json["data"]["item_id"]


def test_full_review_and_sign_off_round(app):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    qc, pm = Api(app, "qc"), Api(app, "pm")
    pid = _project(editor)

    r = editor.post(
        "/api/requests",
        {"type": "CREATE", "project_id": pid, "data": {"title": "Login", "content": "<p>users log in</p>"}},
    )
    assert r.status_code == 201
    assert r.json["data"]["status"] == "PENDING"
    rid = r.json["data"]["id"]

    assert inspector.get("/api/requests/pending/count").json["data"]["count"] == 1
    assert [cr["id"] for cr in inspector.get("/api/requests/pending").json["data"]] == [rid]

    r = inspector.post(f"/api/requests/{rid}/approve", {"review_note": "fine"})
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["version"] == 1
    assert data["request"]["status"] == "APPROVED"
    assert data["iso_doc_path"]
    assert f"/projects/{pid}" in r.json["invalidate"]
    item_id = data["item_id"]

    item = editor.get(f"/api/items/{item_id}").json["data"]
    assert item["full_id"] == "SRS-1"
    assert item["current_version"] == 1

    tree = editor.get(f"/api/projects/{pid}").json["data"]
    assert [n["full_id"] for n in tree["items"]] == ["SRS-1"]

    assert editor.get("/api/notifications/unread-count").json["data"]["count"] == 1

    approvals = qc.get("/api/qc-documents/pending-qc").json["data"]
    assert len(approvals) == 1
    aid = approvals[0]["id"]

    assert pm.post(f"/api/qc-documents/{aid}/approve-pm").status_code == 409
    r = qc.post(f"/api/qc-documents/{aid}/approve-qc", {"note": "checked"})
    assert r.status_code == 200
    assert r.json["data"]["status"] == "PENDING_PM"
    r = pm.post(f"/api/qc-documents/{aid}/approve-pm")
    assert r.status_code == 200
    assert r.json["data"]["status"] == "APPROVED"

    r = pm.get(f"/api/qc-documents/{aid}/document")
    assert r.status_code == 200
    assert b"QC: qc" in r.data

    history = editor.get(f"/api/items/{item_id}/history").json["data"]
    assert [h["version"] for h in history] == [1]
    assert history[0]["qc_status"] == "APPROVED"

    by_full_id = editor.get(f"/api/history/projects/{pid}/items/SRS-1").json["data"]
    assert [h["id"] for h in by_full_id] == [history[0]["id"]]

    r = editor.post("/api/notifications/read-all")
    assert r.json["data"]["updated"] == 2
    assert editor.get("/api/notifications/unread-count").json["data"]["count"] == 0


def test_reject_resubmit_and_chain_timeline(app):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    pid = _project(editor)

    rid = editor.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "Draft"}).json["data"]["id"]
    r = inspector.post(f"/api/requests/{rid}/reject", {"review_note": "too vague"})
    assert r.json["data"]["status"] == "REJECTED"

    assert editor.get("/api/requests/rejected/count").json["data"]["count"] == 1
    assert editor.get(f"/api/requests/{rid}").json["data"]["review_note"] == "too vague"

    r = editor.post(f"/api/requests/{rid}/resubmit", {"title": "Precise draft"})
    assert r.status_code == 201
    new_id = r.json["data"]["id"]
    assert r.json["data"]["previous_request_id"] == rid
    assert editor.get("/api/requests/rejected/count").json["data"]["count"] == 0

    inspector.post(f"/api/requests/{new_id}/approve")
    chain = editor.get(f"/api/requests/{new_id}/chain").json["data"]
    assert [c["id"] for c in chain["chain"]] == [new_id, rid]
    assert [[e["type"] for e in rnd] for rnd in chain["timeline"]] == [
        ["SUBMISSION", "REJECTION"],
        ["RESUBMISSION", "APPROVAL"],
    ]


def test_cancel_rejected_request(app):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    pid = _project(editor)
    rid = editor.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "Gone"}).json["data"]["id"]

    r = editor.post(f"/api/requests/{rid}/cancel")
    assert r.status_code == 409
    assert r.json["error"]["code"] == "INVALID_STATE"

    inspector.post(f"/api/requests/{rid}/reject", {"review_note": "no"})
    assert editor.post(f"/api/requests/{rid}/cancel").status_code == 200
    assert editor.get(f"/api/requests/{rid}").status_code == 404


def test_role_checks_and_error_envelope(app):
    viewer, editor = Api(app, "viewer"), Api(app, "editor")
    pid = _project(editor)

    r = viewer.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "T"})
    assert r.status_code == 403
    assert r.json == {"ok": False, "error": {"code": "FORBIDDEN", "message": "Missing permission requests.submit."}}

    assert editor.get("/api/requests/pending").status_code == 403
    assert editor.get("/api/requests/pending/count").json["data"]["count"] == 0

    r = editor.post("/api/requests", {"type": "CREATE", "project_id": pid})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "VALIDATION_ERROR"

    r = editor.post("/api/requests", {"type": "PROJECT_DELETE", "project_id": pid})
    assert r.status_code == 403

    r = editor.post("/api/requests/9999/approve")
    assert r.status_code == 403

    assert editor.get("/admin/users").status_code == 403
    assert editor.get("/admin/audit").status_code == 403


def test_self_approval_and_double_approval_over_http(app):
    inspector, admin = Api(app, "inspector"), Api(app, "admin")
    pid = _project(admin)
    rid = inspector.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "Mine"}).json["data"]["id"]

    r = inspector.post(f"/api/requests/{rid}/approve")
    assert r.status_code == 403
    assert r.json["error"]["code"] == "SELF_APPROVAL_FORBIDDEN"

    assert admin.post(f"/api/requests/{rid}/approve").status_code == 200
    r = admin.post(f"/api/requests/{rid}/approve")
    assert r.status_code == 404


def test_malformed_fields_refused_at_submission_and_apply_failures_reported(app, monkeypatch):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    pid = _project(editor)

    r = editor.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "T", "content": {"html": "<p>x</p>"}})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "VALIDATION_ERROR"
    r = editor.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "x" * 256})
    assert r.status_code == 400
    r = editor.post("/api/requests", {"type": "PROJECT_UPDATE", "project_id": pid, "title": "P", "description": 7})
    assert r.status_code == 400
    assert inspector.get("/api/requests/pending/count").json["data"]["count"] == 0

    rid = editor.post("/api/requests", {"type": "CREATE", "project_id": pid, "title": "Fine"}).json["data"]["id"]
    monkeypatch.setattr(engine, "serialize_attachments", lambda attachments: {"not": "text"})
    r = inspector.post(f"/api/requests/{rid}/approve")
    assert r.status_code == 500
    assert r.json["error"]["code"] == "APPLY_FAILED"
    assert r.json["error"]["message"].startswith("Failed to apply change")
    assert [cr["id"] for cr in inspector.get("/api/requests/pending").json["data"]] == [rid]


def test_update_and_delete_through_requests(app):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    pid = _project(editor)
    a = _create_item(editor, inspector, pid, "A", content="one")
    b = _create_item(editor, inspector, pid, "B", related_items=[a])

    rels = editor.get(f"/api/items/{a}/relations").json["data"]
    assert [r["id"] for r in rels] == [b]

    rid = editor.post(
        "/api/requests", {"type": "UPDATE", "item_id": a, "title": "A", "content": "two"}
    ).json["data"]["id"]
    assert inspector.post(f"/api/requests/{rid}/approve").json["data"]["version"] == 2

    history = editor.get(f"/api/items/{a}/history").json["data"]
    detail = editor.get(f"/api/history/{history[0]['id']}").json["data"]
    assert detail["diff"] == {"content": {"old": "one", "new": "two"}}

    rid = editor.post("/api/requests", {"type": "DELETE", "item_id": b}).json["data"]["id"]
    assert inspector.post(f"/api/requests/{rid}/approve").status_code == 200
    assert editor.get(f"/api/items/{b}").json["data"]["is_deleted"] is True
    assert editor.get(f"/api/items/{a}/relations").json["data"] == []

    rows = editor.get("/api/history", query_string={"project_id": pid, "change_type": "DELETE"}).json["data"]
    assert [h["item_id"] for h in rows] == [b]
    assert editor.get("/api/history", query_string={"change_type": "BOGUS"}).status_code == 400


def test_direct_relation_edits_are_reviewer_only(app):
    editor, inspector = Api(app, "editor"), Api(app, "inspector")
    pid = _project(editor)
    a = _create_item(editor, inspector, pid, "A")
    b = _create_item(editor, inspector, pid, "B")

    assert editor.post(f"/api/items/{a}/relations/{b}").status_code == 403
    r = inspector.post(f"/api/items/{a}/relations/{b}", {"description": "traces"})
    assert r.json["data"]["created"] is True
    assert editor.get(f"/api/items/{b}/relations").json["data"][0]["description"] == "traces"

    assert inspector.patch(f"/api/items/{a}/relations/{b}", {"description": "verifies"}).status_code == 200
    assert editor.get(f"/api/items/{a}/relations").json["data"][0]["description"] == "verifies"

    assert inspector.post(f"/api/items/{a}/relations/{a}").status_code == 400
    r = inspector.delete(f"/api/items/{a}/relations/{b}")
    assert r.json["data"]["removed"] == 2


def test_project_lifecycle_requests(app):
    admin = Api(app, "admin")
    pid = _project(admin, "TMP")

    rid = admin.post(
        "/api/requests", {"type": "PROJECT_UPDATE", "project_id": pid, "title": "Temporary", "description": "scratch"}
    ).json["data"]["id"]
    assert admin.post(f"/api/requests/{rid}/approve").status_code == 200
    assert admin.get(f"/api/projects/{pid}").json["data"]["title"] == "Temporary"

    rid = admin.post("/api/requests", {"type": "PROJECT_DELETE", "project_id": pid}).json["data"]["id"]
    r = admin.post(f"/api/requests/{rid}/approve")
    assert r.status_code == 200
    assert "/projects" in r.json["invalidate"]
    assert admin.get(f"/api/projects/{pid}").status_code == 404


def test_user_admin_and_audit(app):
    admin = Api(app, "admin")

    r = admin.post("/admin/users", {"username": "newqc", "email": "QC@Example.com", "password": "longenough", "role": "INSPECTOR", "is_qc": True})
    assert r.status_code == 201
    uid = r.json["data"]["id"]
    assert r.json["data"]["email"] == "qc@example.com"
    assert r.json["data"]["is_qc"] is True

    r = admin.post("/admin/users", {"username": "newqc", "password": "longenough"})
    assert r.status_code == 409
    assert r.json["error"]["code"] == "DUPLICATE_USERNAME"
    assert admin.post("/admin/users", {"username": "x", "password": "longenough"}).status_code == 400
    assert admin.post("/admin/users", {"username": "shorty", "password": "short"}).status_code == 400

    r = admin.post(f"/admin/users/{uid}/update", {"role": "VIEWER", "is_qc": False})
    assert r.json["data"]["role"] == "VIEWER"
    assert admin.post(f"/admin/users/{uid}/reset-password", {"password": "anotherpass"}).status_code == 200
    assert Api(app, "newqc", "anotherpass").get("/auth/me").json["data"]["role"] == "VIEWER"

    events = admin.get("/admin/audit", query_string={"action": "user."}).json["data"]
    assert {e["action"] for e in events} == {"user.create", "user.update", "user.password_reset"}
