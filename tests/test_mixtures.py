"""Solvent mixtures consume solvent stock and keep their own liter ledger."""
import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import Base, Permission, Role, User
from app.polimaks.modules.machines.models import Machine


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
        r = Role(key="warehouse", name="Warehouse")
        for key in ("inventory.view", "inventory.edit"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(phone_number="901234567", password_hash=generate_password_hash("password1"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u, Machine(machine_type="laminatsiya", name="Laminatsiya 1")])
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    c.post("/auth/login", json={"phone_number": "901234567", "password": "password1"})
    return c


def _solvent(client, solvent_type, liters, price, currency="USD"):
    r = client.post(
        "/admin/inventory/solvent",
        json={"type": solvent_type, "initial_quantity": liters, "price_per_liter": price, "price_currency": currency},
    )
    assert r.status_code == 201, r.json
    return r.json["id"]


def _quantity(client, solvent_id):
    return client.get(f"/admin/inventory/solvent/{solvent_id}").json["quantity"]


def test_create_mixture_books_solvent_outs(client):
    eaf = _solvent(client, "eaf", 100, 2)
    etilin = _solvent(client, "etilin", 50, 4)
    r = client.post(
        "/admin/mixtures",
        json={
            "name": "Mix A",
            "created_date": "2024-03-01",
            "components": [
                {"solvent_id": eaf, "quantity_liter": 10},
                {"solvent_id": etilin, "quantity_liter": 10},
            ],
        },
    )
    assert r.status_code == 201, r.json
    mix = r.json
    assert mix["total_liter"] == 20
    assert mix["total_kg"] == pytest.approx(16.6)
    assert mix["total_cost"] == 60
    assert mix["price_per_liter"] == 3
    assert mix["price_currency"] == "USD"
    assert _quantity(client, eaf) == 90
    assert _quantity(client, etilin) == 40

    ledger = client.get(f"/admin/inventory/solvent/{eaf}").json["ledger"]
    assert ledger[0]["mixture_id"] == mix["id"]
    assert ledger[0]["note"] == "Mixture: Mix A"


def test_mixture_cannot_exceed_stock(client):
    eaf = _solvent(client, "eaf", 5, 2)
    r = client.post("/admin/mixtures", json={"name": "Big", "components": [{"solvent_id": eaf, "quantity_liter": 6}]})
    assert r.status_code == 400
    assert any("only 5 L in stock" in e for e in r.json["errors"])
    assert _quantity(client, eaf) == 5


def test_mixture_rejects_duplicate_types_and_mixed_currency(client):
    a = _solvent(client, "eaf", 10, 2)
    b = _solvent(client, "eaf", 10, 2)
    c = _solvent(client, "metoksil", 10, 20000, currency="UZS")
    r = client.post(
        "/admin/mixtures",
        json={
            "name": "Bad",
            "components": [
                {"solvent_id": a, "quantity_liter": 1},
                {"solvent_id": b, "quantity_liter": 1},
                {"solvent_id": c, "quantity_liter": 1},
            ],
        },
    )
    assert r.status_code == 400
    assert "Only one EAF component is allowed." in r.json["errors"]
    assert "All components must be priced in the same currency." in r.json["errors"]


def test_mixture_needs_a_component(client):
    r = client.post("/admin/mixtures", json={"name": "Empty", "components": []})
    assert r.status_code == 400
    assert "At least one component with a positive quantity is required." in r.json["errors"]


def test_edit_mixture_rebooks_and_counts_own_usage(client):
    eaf = _solvent(client, "eaf", 10, 2)
    mix = client.post("/admin/mixtures", json={"name": "M", "components": [{"solvent_id": eaf, "quantity_liter": 8}]}).json
    assert _quantity(client, eaf) == 2

    # 10 L is available again once the mixture's own 8 L is counted back.
    r = client.put(f"/admin/mixtures/{mix['id']}", json={"name": "M2", "components": [{"solvent_id": eaf, "quantity_liter": 10}]})
    assert r.status_code == 200, r.json
    assert r.json["total_liter"] == 10
    assert _quantity(client, eaf) == 0


def test_delete_mixture_restores_stock(client):
    eaf = _solvent(client, "eaf", 10, 2)
    mix = client.post("/admin/mixtures", json={"name": "M", "components": [{"solvent_id": eaf, "quantity_liter": 4}]}).json
    assert client.delete(f"/admin/mixtures/{mix['id']}").status_code == 200
    assert _quantity(client, eaf) == 10


def test_mixture_rows_cannot_be_edited_from_solvent_ledger(client):
    eaf = _solvent(client, "eaf", 10, 2)
    client.post("/admin/mixtures", json={"name": "M", "components": [{"solvent_id": eaf, "quantity_liter": 4}]})
    tx_id = client.get(f"/admin/inventory/solvent/{eaf}").json["ledger"][0]["id"]
    r = client.delete(f"/admin/inventory/solvent/{eaf}/transactions/{tx_id}")
    assert r.status_code == 409


def test_mixture_transactions_track_balance(client, app):
    eaf = _solvent(client, "eaf", 20, 2)
    mix = client.post("/admin/mixtures", json={"name": "M", "components": [{"solvent_id": eaf, "quantity_liter": 10}]}).json
    with session_scope(app) as s:
        machine_id = s.query(Machine).one().id

    r = client.post(
        "/admin/mixture-transactions",
        json={"mixture_id": mix["id"], "direction": "out", "amount_liter": 4, "date": "2024-03-02"},
    )
    assert r.status_code == 400
    assert "Machine type and machine are required for out movements." in r.json["errors"]

    r = client.post(
        "/admin/mixture-transactions",
        json={
            "mixture_id": mix["id"],
            "direction": "out",
            "amount_liter": 4,
            "date": "2024-03-02",
            "machine_type": "laminatsiya",
            "machine_id": machine_id,
        },
    )
    assert r.status_code == 201
    assert r.json["balance"] == 6
    out_id = r.json["id"]

    r = client.post(
        "/admin/mixture-transactions",
        json={"mixture_id": mix["id"], "direction": "out", "amount_liter": 50, "date": "2024-03-03", "machine_type": "laminatsiya", "machine_id": machine_id},
    )
    assert r.json["balance"] == 0

    rows = client.get(f"/admin/mixture-transactions?mixture_id={mix['id']}").json["items"]
    assert rows[0]["date"] == "2024-03-03"
    assert rows[1]["machine_name"] == "Laminatsiya 1"

    r = client.delete(f"/admin/mixture-transactions/{out_id}")
    assert r.json["balance"] == 0


def test_mixture_rejects_non_finite_quantities(client):
    eaf = _solvent(client, "eaf", 20, 2)
    r = client.post("/admin/mixtures", json={"name": "Bad", "components": [{"solvent_id": eaf, "quantity_liter": "inf"}]})
    assert r.status_code == 400
    assert "At least one component with a positive quantity is required." in r.json["errors"]
    assert _quantity(client, eaf) == 20

    mix = client.post("/admin/mixtures", json={"name": "M", "components": [{"solvent_id": eaf, "quantity_liter": 5}]}).json
    r = client.post(
        "/admin/mixture-transactions",
        json={"mixture_id": mix["id"], "direction": "in", "amount_liter": "nan", "date": "2024-03-02"},
    )
    assert r.status_code == 400
