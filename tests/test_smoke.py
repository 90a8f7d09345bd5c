from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _check_rate_limit, _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import AuditEvent, Base, Permission, Role, User

ADMIN_PHONE = "901234567"
ADMIN_PASSWORD = "password1"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    _login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        r = Role(key="admin", name="Administrator")
        for key in ("admin.view", "users.view", "users.edit"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(phone_number=ADMIN_PHONE, fullname="Admin", password_hash=generate_password_hash(ADMIN_PASSWORD), is_active=True)
        u.roles.append(r)
        viewer = User(phone_number="991112233", fullname="Viewer", password_hash=generate_password_hash(ADMIN_PASSWORD), is_active=True)
        s.add_all([r, u, viewer])
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, phone=ADMIN_PHONE, password=ADMIN_PASSWORD):
    return client.post("/auth/login", json={"phone_number": phone, "password": password})


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_admin_access(client):
    r = client.get("/admin/")
    assert r.status_code == 401
    assert r.json == {"error": "authentication required"}

    r = _login(client)
    assert r.status_code == 200
    assert r.json["user"]["phone_number"] == ADMIN_PHONE
    assert "admin.view" in r.json["user"]["permissions"]

    r = client.get("/admin/")
    assert r.status_code == 200
    assert r.json["system_status"]["db_connected"] is True
    assert r.json["counts"]["clients"] == 0
    assert set(r.json["counts"]["inventory"]) >= {"film", "solvent", "finished_product"}


def test_login_accepts_formatted_phone(client):
    r = _login(client, phone="90 123-45-67")
    assert r.status_code == 200
    r = client.get("/auth/session")
    assert r.json["authenticated"] is True


def test_bad_password_is_audited(client, app):
    r = _login(client, password="wrong-password")
    assert r.status_code == 401
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").count() == 1


def test_login_rate_limited(client):
    for _ in range(5):
        assert _login(client, password="nope").status_code == 401
    r = _login(client)
    assert r.status_code == 429
    _login_attempts.clear()


def test_rate_limit_forgets_idle_addresses():
    _login_attempts.clear()
    _login_attempts["10.0.0.1"].append(datetime.utcnow() - timedelta(hours=1))
    _login_attempts["10.0.0.2"].append(datetime.utcnow())
    assert _check_rate_limit("10.0.0.3") is False
    assert set(_login_attempts) == {"10.0.0.2"}
    _login_attempts.clear()


def test_login_rejects_non_object_body(client):
    r = client.post("/auth/login", json=[ADMIN_PHONE, ADMIN_PASSWORD])
    assert r.status_code == 401
    assert r.json == {"error": "Invalid credentials."}


def test_forbidden_reports_missing_permission(client):
    _login(client, phone="991112233")
    r = client.get("/admin/audit")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "admin.view"


def test_unknown_route_is_json_404(client):
    r = client.get("/admin/does-not-exist")
    assert r.status_code == 404
    assert r.json == {"error": "not found"}


def test_csrf_required_when_enabled(app):
    app.config["CSRF_ENABLED"] = True
    client = app.test_client()
    assert _login(client).status_code == 200

    r = client.put("/users/me", json={"fullname": "No Token"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]

    token = client.get("/auth/csrf").json["csrf_token"]
    r = client.put("/users/me", json={"fullname": "With Token"}, headers={"X-CSRF-Token": token})
    assert r.status_code == 200
    assert r.json["fullname"] == "With Token"


def test_audit_list_filters(client):
    _login(client)
    client.post("/auth/logout")
    _login(client)
    r = client.get("/admin/audit?action=auth.logout")
    assert r.status_code == 200
    assert [e["action"] for e in r.json["items"]] == ["auth.logout"]

    r = client.get("/admin/audit?date_from=yesterday")
    assert r.status_code == 400


def test_users_me_profile_and_password(client):
    _login(client)
    r = client.get("/users/me")
    assert r.status_code == 200
    assert r.json["fullname"] == "Admin"

    r = client.put("/users/me", json={"password": "newpassword1"})
    assert r.status_code == 400
    assert "Current password is incorrect." in r.json["errors"]

    r = client.put("/users/me", json={"password": "newpassword1", "current_password": ADMIN_PASSWORD})
    assert r.status_code == 200
    client.post("/auth/logout")
    assert _login(client, password="newpassword1").status_code == 200


def test_admin_users_list_and_create(client):
    _login(client)
    r = client.get("/admin/users?limit=1")
    assert r.status_code == 200
    assert r.json["total"] == 2
    assert r.json["limit"] == 1
    assert len(r.json["items"]) == 1
    assert {"id", "phone_number", "fullname", "created_at", "is_premium", "premium_expires_at"} <= set(r.json["items"][0])

    r = client.post("/admin/users", json={"phone_number": "93 000-00-01", "password": "short"})
    assert r.status_code == 400

    r = client.post("/admin/users", json={"phone_number": "93 000-00-01", "password": "longenough", "fullname": "Op"})
    assert r.status_code == 201
    assert r.json["phone_number"] == "930000001"

    r = client.post("/admin/users", json={"phone_number": "930000001", "password": "longenough"})
    assert r.status_code == 409


def test_admin_cannot_edit_self(client):
    _login(client)
    me = client.get("/users/me").json
    r = client.put(f"/admin/users/{me['id']}", json={"is_active": False})
    assert r.status_code == 409
