"""Staff directory."""
import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import Base, Permission, Role, User


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
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        r = Role(key="hr", name="HR")
        for key in ("staff.view", "staff.edit"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(phone_number="901234567", password_hash=generate_password_hash("password1"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u])
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    c.post("/auth/login", json={"phone_number": "901234567", "password": "password1"})
    return c


def test_staff_create_validates(client):
    r = client.post("/admin/staff", json={"name": "", "phone": "123", "role": "boss"})
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Name is required.",
        "Phone must have 9 digits.",
        "Role must be one of: worker, crm, accountant, planner.",
    ]

    r = client.post("/admin/staff", json={"name": "Jasur", "phone": "(90) 777-66-55"})
    assert r.status_code == 201
    assert r.json["role"] == "worker"
    assert r.json["phone"] == "907776655"


def test_staff_list_filters_by_role_and_search(client):
    client.post("/admin/staff", json={"name": "Jasur", "phone": "907776655"})
    client.post("/admin/staff", json={"name": "Kamola", "phone": "911234567", "role": "accountant"})

    assert [m["name"] for m in client.get("/admin/staff").json["items"]] == ["Jasur", "Kamola"]
    assert client.get("/admin/staff?role=accountant").json["total"] == 1
    assert client.get("/admin/staff?q=9112").json["items"][0]["name"] == "Kamola"
    assert client.get("/admin/staff?role=boss").status_code == 400


def test_staff_partial_update(client):
    member = client.post("/admin/staff", json={"name": "Jasur", "phone": "907776655"}).json
    r = client.put(f"/admin/staff/{member['id']}", json={"role": "planner"})
    assert r.status_code == 200
    assert r.json["role"] == "planner"
    assert r.json["name"] == "Jasur"

    r = client.put(f"/admin/staff/{member['id']}", json={"phone": "1"})
    assert r.status_code == 400

    assert client.delete(f"/admin/staff/{member['id']}").status_code == 200
    assert client.get(f"/admin/staff/{member['id']}").status_code == 404
