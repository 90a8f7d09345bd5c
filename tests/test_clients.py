"""Clients: profiles, complaints, agreements, statements, CRM, tolling and the order book."""
import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import AuditEvent, Base, Permission, Role, User
from app.polimaks.modules.clients.models import CrmLead


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
        r = Role(key="sales", name="Sales")
        for key in ("clients.view", "clients.edit", "orders.view", "orders.edit"):
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


def _new_client(client, **overrides):
    payload = {"full_name": "Aziz Karimov", "phone": "90 555-11-22", "company": "Shirin LLC"}
    payload.update(overrides)
    r = client.post("/admin/clients", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def _order(client, client_id, number, **overrides):
    payload = {
        "order_number": number,
        "client_id": client_id,
        "date": "2024-01-10",
        "title": "Chips pack",
        "quantity_kg": 100,
        "material": "BOPP",
        "sub_material": "metal",
        "price_per_kg": 2,
        "price_currency": "USD",
    }
    payload.update(overrides)
    return client.post("/admin/orders", json=payload)


def test_client_crud_and_phone_normalisation(client):
    c = _new_client(client)
    assert c["phone"] == "905551122"
    assert c["phone_display"] == "90 555-11-22"

    r = client.post("/admin/clients", json={"full_name": "", "company": ""})
    assert r.status_code == 400
    r = client.post("/admin/clients", json={"full_name": "X", "phone": "12345"})
    assert "Phone must have 9 digits." in r.json["errors"]

    r = client.put(f"/admin/clients/{c['id']}", json={"full_name": "Aziz K.", "phone": "905551122"})
    assert r.json["full_name"] == "Aziz K."
    assert r.json["company"] == ""

    listed = client.get("/admin/clients?q=aziz").json
    assert listed["total"] == 1

    assert client.delete(f"/admin/clients/{c['id']}").status_code == 200
    assert client.get(f"/admin/clients/{c['id']}").status_code == 404


def test_client_with_orders_cannot_be_deleted(client):
    c = _new_client(client)
    assert _order(client, c["id"], "A-1").status_code == 201
    r = client.delete(f"/admin/clients/{c['id']}")
    assert r.status_code == 409


def test_complaint_lifecycle(client):
    c = _new_client(client)
    r = client.post(f"/admin/clients/{c['id']}/complaints", json={"title": "Wrong colour"})
    assert r.status_code == 201
    complaint = r.json
    assert complaint["status"] == "open"
    assert complaint["resolved_at"] is None

    r = client.put(f"/admin/clients/{c['id']}/complaints/{complaint['id']}", json={"status": "resolved"})
    assert r.json["status"] == "resolved"
    assert r.json["resolved_at"]

    r = client.put(f"/admin/clients/{c['id']}/complaints/{complaint['id']}", json={"status": "closed"})
    assert r.status_code == 400

    other = _new_client(client, full_name="Other", phone="")
    r = client.delete(f"/admin/clients/{other['id']}/complaints/{complaint['id']}")
    assert r.status_code == 404


def test_agreements_compare_limit_with_ordered_kg(client):
    c = _new_client(client)
    _order(client, c["id"], "A-1", date="2024-01-05", quantity_kg=80)
    _order(client, c["id"], "A-2", date="2024-01-20", quantity_kg=40)
    _order(client, c["id"], "A-3", date="2024-02-03", quantity_kg=100)

    for month, limit in (("2024-01", 100), ("2024-02", 500)):
        r = client.post(f"/admin/clients/{c['id']}/agreements", json={"month": month, "limit_kg": limit})
        assert r.status_code == 200

    # Saving the same month again replaces the limit.
    client.post(f"/admin/clients/{c['id']}/agreements", json={"month": "2024-02", "limit_kg": 400})

    rows = client.get(f"/admin/clients/{c['id']}/agreements").json["items"]
    assert [(r["month"], r["limit_kg"], r["achieved_kg"], r["status"]) for r in rows] == [
        ("2024-02", 400, 100, "below_limit"),
        ("2024-01", 100, 120, "hit"),
    ]

    r = client.post(f"/admin/clients/{c['id']}/agreements", json={"month": "2024-13", "limit_kg": 1})
    assert r.json["errors"] == ["Month must be in YYYY-MM format."]
    r = client.post(f"/admin/clients/{c['id']}/agreements", json={"month": "2024-03", "limit_kg": 0})
    assert r.json["errors"] == ["Limit must be a positive number."]


def test_statement_balance_in_display_currency(client):
    c = _new_client(client)
    _order(client, c["id"], "A-1", quantity_kg=10, price_per_kg=2)  # 20 USD promised
    r = client.post(
        f"/admin/clients/{c['id']}/transactions",
        json={"type": "payment", "amount": 115000, "currency": "UZS", "date": "2024-01-11"},
    )
    assert r.status_code == 201
    client.post(
        f"/admin/clients/{c['id']}/transactions",
        json={"type": "payment", "amount": 5, "currency": "USD", "date": "2024-01-12", "exchange_rate": 12000},
    )

    st = client.get(f"/admin/clients/{c['id']}/statement?currency=UZS").json
    assert st["promised"] == 230000
    assert st["paid"] == 175000
    assert st["balance"] == -55000
    assert [row["source"] for row in st["rows"]] == ["ledger", "ledger", "order_book"]
    assert st["rows"][-1]["notes"] == "Order A-1: Chips pack"

    st_usd = client.get(f"/admin/clients/{c['id']}/statement?currency=usd").json
    assert st_usd["promised"] == 20
    assert client.get(f"/admin/clients/{c['id']}/statement?currency=EUR").status_code == 400


def test_client_transaction_validation(client):
    c = _new_client(client)
    r = client.post(
        f"/admin/clients/{c['id']}/transactions",
        json={"type": "gift", "amount": -1, "currency": "EUR", "exchange_rate": "0"},
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Type must be 'promise' or 'payment'.",
        "Amount must be a positive number.",
        "Currency must be one of: UZS, USD.",
        "Exchange rate must be a positive number.",
    ]

    r = client.post(f"/admin/clients/{c['id']}/transactions", json={"type": "payment", "amount": "nan", "exchange_rate": "inf"})
    assert r.status_code == 400
    assert r.json["errors"] == ["Amount must be a positive number.", "Exchange rate must be a positive number."]


def test_crm_lead_converts_to_client(client, app):
    r = client.post("/admin/crm", json={"full_name": "Lola", "phone": "93 111 22 33", "status": "very_interested"})
    assert r.status_code == 201
    lead_id = r.json["id"]
    assert client.get("/admin/crm?status=very_interested").json["total"] == 1

    r = client.post("/admin/crm", json={"full_name": "Nope", "phone": "93", "status": "maybe"})
    assert r.status_code == 400

    r = client.post(f"/admin/crm/{lead_id}/convert")
    assert r.status_code == 201
    assert r.json["full_name"] == "Lola"
    assert r.json["phone"] == "931112233"

    with session_scope(app) as s:
        assert s.get(CrmLead, lead_id) is None
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]
    assert "crm.lead.convert" in actions


def test_tolling_records(client):
    c = _new_client(client)
    r = client.post("/admin/tolling", json={"client_id": c["id"], "quantity_kg": 50, "film_subcategory": "metal"})
    assert r.json["errors"] == ["Film sub-category requires a category."]

    r = client.post(
        "/admin/tolling",
        json={"client_id": c["id"], "quantity_kg": 50, "film_category": "CPP", "film_subcategory": "metal", "color": "red"},
    )
    assert r.status_code == 201
    assert r.json["client_name"] == "Aziz Karimov"

    assert client.get(f"/admin/tolling?client_id={c['id']}").json["total"] == 1


def test_order_book_validation_and_duplicates(client):
    c = _new_client(client)
    r = _order(client, c["id"], "A-1")
    assert r.status_code == 201
    assert r.json["label"] == "A-1 - Aziz Karimov"

    r = _order(client, c["id"], "A-1")
    assert r.status_code == 409
    assert r.json["errors"] == ["Order number already exists."]

    r = _order(client, c["id"], "A-2", material="PE", sub_material="metal", quantity_kg=0)
    assert r.status_code == 400
    assert "Quantity (kg) must be a positive number." in r.json["errors"]
    assert "Sub-material 'metal' does not belong to PE." in r.json["errors"]

    r = _order(client, c["id"], "A-3", start_date="2024-02-10", end_date="2024-02-01")
    assert r.status_code == 400

    order_id = client.get("/admin/orders").json["items"][0]["id"]
    r = client.put(f"/admin/orders/{order_id}", json={**_order_payload(c["id"], "A-1"), "quantity_kg": 150})
    assert r.status_code == 200
    assert r.json["quantity_kg"] == 150

    listed = client.get("/admin/orders?start=2024-01-01&end=2024-01-31").json
    assert listed["total"] == 1


def _order_payload(client_id, number):
    return {"order_number": number, "client_id": client_id, "date": "2024-01-10", "quantity_kg": 100}


def test_orders_need_order_permission(app):
    with session_scope(app) as s:
        u = User(phone_number="991112233", password_hash=generate_password_hash("password1"), is_active=True)
        s.add(u)
    c = app.test_client()
    c.post("/auth/login", json={"phone_number": "991112233", "password": "password1"})
    r = c.get("/admin/orders")
    assert r.status_code == 403
    assert r.json["missing_permission"] == "orders.view"
