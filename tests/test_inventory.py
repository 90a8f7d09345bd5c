"""Warehouse items, ledger movements and balances."""
from datetime import date, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import Base, Permission, Role, User
from app.polimaks.modules.inventory.models import Film
from app.polimaks.modules.inventory.service import period_balance, stock_balance
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
        r = Role(key="admin", name="Administrator")
        for key in ("inventory.view", "inventory.edit"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(phone_number="901234567", password_hash=generate_password_hash("password1"), is_active=True)
        u.roles.append(r)
        s.add_all([r, u, Machine(machine_type="pechat", name="Pechat 1")])
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    c.post("/auth/login", json={"phone_number": "901234567", "password": "password1"})
    return c


def _film(client, **overrides):
    payload = {
        "category": "BOPP",
        "subcategory": "metal",
        "thickness": 20,
        "width": 1000,
        "initial_quantity": 100,
        "price_per_kg": 2.5,
        "price_currency": "USD",
        "created_date": "2024-01-01",
    }
    payload.update(overrides)
    r = client.post("/admin/inventory/film", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def _pechat_id(app):
    with session_scope(app) as s:
        return s.query(Machine).filter(Machine.machine_type == "pechat").one().id


def test_inventory_requires_login(app):
    r = app.test_client().get("/admin/inventory/film")
    assert r.status_code == 401


def test_unknown_kind_is_404(client):
    assert client.get("/admin/inventory/plutonium").status_code == 404


def test_create_film_validates_subcategory(client):
    r = client.post(
        "/admin/inventory/film",
        json={"category": "PE", "subcategory": "metal", "thickness": 20, "width": 1000},
    )
    assert r.status_code == 400
    assert any("does not belong to PE" in e for e in r.json["errors"])


def test_create_and_list_film(client):
    film = _film(client)
    assert film["quantity"] == 100
    assert film["unit"] == "kg"
    assert film["label"].startswith("BOPP metal 20mk x 1000mm")

    r = client.get("/admin/inventory/film?category=BOPP")
    assert r.json["total"] == 1
    r = client.get("/admin/inventory/film?category=PET")
    assert r.json["total"] == 0


def test_out_movement_requires_machine(client, app):
    film = _film(client)
    r = client.post(
        f"/admin/inventory/film/{film['id']}/transactions",
        json={"direction": "out", "amount": 10, "date": "2024-01-05"},
    )
    assert r.status_code == 400
    assert "Machine type and machine are required for out movements." in r.json["errors"]

    r = client.post(
        f"/admin/inventory/film/{film['id']}/transactions",
        json={"direction": "out", "amount": 10, "date": "2024-01-05", "machine_type": "pechat", "machine_id": _pechat_id(app)},
    )
    assert r.status_code == 201
    assert r.json["balance"] == 90


def test_spare_part_out_needs_no_machine(client):
    r = client.post("/admin/inventory/spare_part", json={"title": "Bearing", "initial_quantity": 4, "price": 12})
    assert r.status_code == 201
    part = r.json
    r = client.post(
        f"/admin/inventory/spare_part/{part['id']}/transactions",
        json={"direction": "out", "amount": 1, "date": date.today().isoformat()},
    )
    assert r.status_code == 201
    assert r.json["balance"] == 3


def test_balance_never_goes_negative(client, app):
    film = _film(client, initial_quantity=5)
    r = client.post(
        f"/admin/inventory/film/{film['id']}/transactions",
        json={"direction": "out", "amount": 50, "date": "2024-01-02", "machine_type": "pechat", "machine_id": _pechat_id(app)},
    )
    assert r.status_code == 201
    assert r.json["balance"] == 0


def test_ledger_has_opening_row_and_running_balance(client, app):
    film = _film(client)
    mid = _pechat_id(app)
    base = f"/admin/inventory/film/{film['id']}/transactions"
    client.post(base, json={"direction": "in", "amount": 50, "date": "2024-01-03"})
    client.post(base, json={"direction": "out", "amount": 30, "date": "2024-01-04", "machine_type": "pechat", "machine_id": mid})

    rows = client.get(base).json["items"]
    assert [r["balance"] for r in rows] == [120, 150, 100]
    assert rows[-1]["generated"] is True
    assert rows[-1]["note"] == "generated from stock"
    assert rows[-1]["date"] == "2024-01-01"


def test_edit_and_delete_movement_recompute_quantity(client, app):
    film = _film(client)
    base = f"/admin/inventory/film/{film['id']}/transactions"
    tx_id = client.post(base, json={"direction": "in", "amount": 40, "date": "2024-01-03"}).json["id"]

    r = client.put(f"{base}/{tx_id}", json={"direction": "in", "amount": 10, "date": "2024-01-03"})
    assert r.status_code == 200
    assert r.json["balance"] == 110

    r = client.delete(f"{base}/{tx_id}")
    assert r.status_code == 200
    assert r.json["balance"] == 100


def test_changing_initial_quantity_recomputes(client):
    film = _film(client)
    base = f"/admin/inventory/film/{film['id']}"
    client.post(f"{base}/transactions", json={"direction": "in", "amount": 5, "date": "2024-01-03"})
    r = client.put(base, json={"initial_quantity": 20})
    assert r.status_code == 200
    assert r.json["quantity"] == 25


def test_period_balance(app):
    with session_scope(app) as s:
        user = s.query(User).first()
        film = Film(category="BOPP", thickness=20, width=1000, initial_quantity=100, quantity=100, created_date=date(2024, 1, 1), created_by_user_id=user.id)
        s.add(film)
        s.flush()
        from app.polimaks.modules.inventory.service import book_movement

        book_movement(s, film, "in", 20, user, on_date=date(2024, 1, 5))
        book_movement(s, film, "out", 50, user, on_date=date(2024, 1, 10))
        book_movement(s, film, "in", 7, user, on_date=date(2024, 2, 1))

        result = period_balance(s, film, date(2024, 1, 6), date(2024, 1, 31))
        assert result["opening"] == 120
        assert result["net"] == -50
        assert result["final"] == 70
        assert stock_balance(s, film) == 77

        with pytest.raises(ValueError):
            period_balance(s, film, date(2024, 2, 1), date(2024, 1, 1))


def test_period_balance_endpoint_rejects_reversed_range(client):
    film = _film(client)
    r = client.get(f"/admin/inventory/film/{film['id']}/balance?start=2024-02-01&end=2024-01-01")
    assert r.status_code == 400


def test_glue_totals_and_cylinder_usage(client):
    r = client.post(
        "/admin/inventory/glue",
        json={"name": "PU-1", "initial_quantity": 3, "net_weight": 200, "gross_weight": 215, "price": 100},
    )
    assert r.status_code == 201
    assert r.json["unit"] == "barrel"
    assert r.json["total_net_weight"] == 600
    assert r.json["total_gross_weight"] == 645

    r = client.post(
        "/admin/inventory/cylinder",
        json={"origin": "china", "length": 800, "diameter": 120, "initial_quantity": 1, "usage_limit": 100},
    )
    assert r.status_code == 201
    cyl = r.json
    r = client.post(f"/admin/inventory/cylinder/{cyl['id']}/usage", json={"amount": 60})
    assert r.json == {"usage": 60, "usage_limit": 100, "limit_reached": False}
    r = client.post(f"/admin/inventory/cylinder/{cyl['id']}/usage", json={"amount": 40})
    assert r.json["limit_reached"] is True


def test_delete_item_removes_ledger(client):
    film = _film(client)
    client.post(f"/admin/inventory/film/{film['id']}/transactions", json={"direction": "in", "amount": 5, "date": "2024-01-03"})
    assert client.delete(f"/admin/inventory/film/{film['id']}").status_code == 200
    assert client.get(f"/admin/inventory/film/{film['id']}").status_code == 404


def test_summary_values_stock_per_currency(client):
    _film(client, initial_quantity=10, price_per_kg=2)
    client.post("/admin/inventory/waste", json={"title": "Trim", "initial_quantity": 100, "price_per_kg": 1000, "price_currency": "UZS"})
    summary = client.get("/admin/inventory").json["summary"]
    assert summary["film"]["value_by_currency"] == {"USD": 20}
    assert summary["waste"]["total_quantity"] == 100
    assert summary["paint"]["count"] == 0


def test_finished_product_rejects_unknown_location(client):
    r = client.post("/admin/inventory/finished_product", json={"title": "Bag", "location": "samarkand"})
    assert r.status_code == 400
    r = client.post("/admin/inventory/finished_product", json={"title": "Bag", "location": "angren", "initial_quantity": 12})
    assert r.status_code == 201
    assert client.get("/admin/inventory/finished_product?location=angren").json["total"] == 1


def test_future_dated_movement_counts_in_balance(client):
    film = _film(client)
    future = (date.today() + timedelta(days=3)).isoformat()
    r = client.post(f"/admin/inventory/film/{film['id']}/transactions", json={"direction": "in", "amount": 1, "date": future})
    assert r.json["balance"] == 101


def test_period_before_item_existed_is_empty(app):
    with session_scope(app) as s:
        user = s.query(User).first()
        film = Film(category="BOPP", thickness=20, width=1000, initial_quantity=100, quantity=100, created_date=date(2024, 3, 1), created_by_user_id=user.id)
        s.add(film)
        s.flush()

        before = period_balance(s, film, date(2024, 1, 1), date(2024, 1, 31))
        assert (before["opening"], before["net"], before["final"]) == (0, 0, 0)

        spanning = period_balance(s, film, date(2024, 2, 1), date(2024, 3, 31))
        assert (spanning["opening"], spanning["net"], spanning["final"]) == (0, 100, 100)

        after = period_balance(s, film, date(2024, 4, 1), date(2024, 4, 30))
        assert (after["opening"], after["net"], after["final"]) == (100, 0, 100)
        assert stock_balance(s, film, as_of=date(2024, 2, 29)) == 0
        assert stock_balance(s, film) == 100


@pytest.mark.parametrize("amount", ["nan", "inf", "-Infinity", 1e999])
def test_movement_rejects_non_finite_amount(client, amount):
    film = _film(client)
    r = client.post(
        f"/admin/inventory/film/{film['id']}/transactions",
        json={"direction": "in", "amount": amount, "date": "2024-01-05"},
    )
    assert r.status_code == 400
    assert "Amount must be a positive number." in r.json["errors"]
    assert client.get(f"/admin/inventory/film/{film['id']}").json["quantity"] == 100
