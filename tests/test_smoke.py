import pytest
from sqlalchemy import text
from werkzeug.security import generate_password_hash

from app.rdms import auth, create_app
from app.rdms.db import session_scope
from app.rdms.models import Base, User


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(username="admin", password_hash=generate_password_hash("pw"), role="ADMIN", is_active=True))

    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").status_code == 200


def test_login_and_me(client):
    # Anonymous is rejected
    r = client.get("/auth/me")
    assert r.status_code == 401

    r = client.post("/auth/login", json={"username": "admin", "password": "pw"})
    assert r.status_code == 200
    assert r.json["data"]["role"] == "ADMIN"
    assert r.json["csrf_token"]

    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["data"]["username"] == "admin"


def test_bad_credentials_then_rate_limit(client):
    for _ in range(5):
        r = client.post("/auth/login", json={"username": "admin", "password": "wrong"})
        assert r.status_code == 401
        assert r.json["error"]["code"] == "INVALID_CREDENTIALS"
    r = client.post("/auth/login", json={"username": "admin", "password": "pw"})
    assert r.status_code == 429


def test_api_requires_login(client):
    r = client.get("/api/projects")
    assert r.status_code == 401
    assert r.json["error"]["code"] == "UNAUTHENTICATED"


def test_mutation_without_csrf_token_is_refused(client):
    client.post("/auth/login", json={"username": "admin", "password": "pw"})
    r = client.post("/api/projects", json={"title": "P", "code_prefix": "P"})
    assert r.status_code == 400
    assert r.json["error"]["code"] == "CSRF_FAILED"


def test_missing_tables_report_schema_out_of_date(app, client):
    with app.extensions["sqlalchemy_engine"].begin() as conn:
        conn.execute(text("DROP TABLE notifications"))
    r = client.get("/auth/me")
    assert r.status_code == 503
    assert r.json["error"]["code"] == "SCHEMA_OUT_OF_DATE"


def test_production_refuses_sqlite_and_default_secret(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "a-real-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()

    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@localhost/rdms")
    monkeypatch.setenv("SECRET_KEY", "change-me")
    with pytest.raises(RuntimeError, match="SECRET_KEY"):
        create_app()
