"""Partner (supplier) directory with free-form categories."""
import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import Base, Permission, Role, User
from app.polimaks.modules.partners.service import normalize_categories


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
        r = Role(key="purchasing", name="Purchasing")
        for key in ("partners.view", "partners.edit"):
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


def test_normalize_categories():
    assert normalize_categories(["Film", " film ", "", None, "Paint"]) == ["Film", "Paint"]
    assert normalize_categories("Glue, Solvent,glue") == ["Glue", "Solvent"]
    assert normalize_categories(None) == []


def test_partner_validation(client):
    r = client.post("/admin/partners", json={"full_name": "", "phone": "90", "categories": 5})
    assert r.status_code == 400
    assert r.json["errors"] == ["Full name is required.", "Phone must have 9 digits.", "Categories must be a list."]


def test_partner_search_and_categories(client):
    a = client.post(
        "/admin/partners",
        json={"full_name": "Sardor", "phone": "90 111 22 33", "company": "PlastImport", "categories": ["Film", "film", "Glue"]},
    )
    assert a.status_code == 201
    assert a.json["categories"] == ["Film", "Glue"]
    client.post("/admin/partners", json={"full_name": "Bekzod", "phone": "912223344", "categories": "Paint"})

    listed = client.get("/admin/partners").json
    assert [p["full_name"] for p in listed["items"]] == ["Bekzod", "Sardor"]
    assert listed["categories"] == ["Film", "Glue", "Paint"]

    assert [p["full_name"] for p in client.get("/admin/partners?category=glue").json["items"]] == ["Sardor"]
    assert client.get("/admin/partners?q=plast").json["total"] == 1
    assert client.get("/admin/partners?q=9122").json["items"][0]["full_name"] == "Bekzod"
    assert client.get("/admin/partners?q=pain").json["total"] == 1
    assert client.get("/admin/partners?category=Film&q=bek").json["total"] == 0


def test_partner_update_and_delete(client):
    p = client.post("/admin/partners", json={"full_name": "Sardor", "phone": "901112233", "categories": ["Film"]}).json
    r = client.put(f"/admin/partners/{p['id']}", json={"full_name": "Sardor A.", "phone": "901112233", "categories": []})
    assert r.json["full_name"] == "Sardor A."
    assert r.json["categories"] == []
    assert client.get("/admin/partners").json["categories"] == []

    assert client.delete(f"/admin/partners/{p['id']}").status_code == 200
    assert client.get(f"/admin/partners/{p['id']}").status_code == 404
