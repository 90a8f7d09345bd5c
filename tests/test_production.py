"""Production plans: status flow, material usage against stock, order costs and machine schedules."""
from datetime import date

import pytest
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import Base, Permission, Role, User
from app.polimaks.modules.clients.models import Client, Order
from app.polimaks.modules.machines.models import Brigade, Machine


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
        r = Role(key="planner", name="Planner")
        for key in ("production.view", "production.edit", "inventory.view", "inventory.edit", "machines.view"):
            r.permissions.append(Permission(key=key, name=key))
        u = User(phone_number="901234567", password_hash=generate_password_hash("password1"), is_active=True)
        u.roles.append(r)
        c = Client(full_name="Aziz Karimov", phone="905551122")
        s.add_all([r, u, c])
        s.flush()
        s.add_all(
            [
                Order(order_number="A-1", date=date(2024, 1, 10), client_id=c.id, title="Chips", quantity_kg=500),
                Machine(machine_type="pechat", name="Pechat 1"),
                Machine(machine_type="reska", name="Reska 1"),
                Brigade(machine_type="reska", name="Cutters"),
            ]
        )
    return app


@pytest.fixture()
def client(app):
    c = app.test_client()
    c.post("/auth/login", json={"phone_number": "901234567", "password": "password1"})
    return c


def _ids(app):
    with session_scope(app) as s:
        return {
            "order": s.query(Order).one().id,
            "pechat": s.query(Machine).filter(Machine.machine_type == "pechat").one().id,
            "reska": s.query(Machine).filter(Machine.machine_type == "reska").one().id,
            "brigade": s.query(Brigade).one().id,
        }


def _plan(client, ids, **overrides):
    payload = {"order_id": ids["order"], "machine_type": "pechat", "machine_id": ids["pechat"]}
    payload.update(overrides)
    r = client.post("/admin/production/plans", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def _film(client, quantity=100, price=2.5):
    r = client.post(
        "/admin/inventory/film",
        json={"category": "BOPP", "thickness": 20, "width": 1000, "initial_quantity": quantity, "price_per_kg": price, "price_currency": "USD"},
    )
    assert r.status_code == 201, r.json
    return r.json["id"]


def test_plan_validation(client, app):
    ids = _ids(app)
    r = client.post(
        "/admin/production/plans",
        json={"order_id": 999, "machine_type": "pechat", "machine_id": ids["reska"], "brigade_id": ids["brigade"]},
    )
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Order is required.",
        f"Unknown pechat machine: {ids['reska']}",
        "Brigade belongs to a different machine type.",
    ]

    r = client.post(
        "/admin/production/plans",
        json={"order_id": ids["order"], "machine_type": "pechat", "machine_id": ids["pechat"], "start_date": "2024-02-10", "end_date": "2024-02-01"},
    )
    assert r.json["errors"] == ["End date cannot be before start date."]

    plan = _plan(client, ids)
    assert plan["status"] == "planning"
    assert plan["order_label"] == "A-1 - Aziz Karimov"
    assert plan["machine_name"] == "Pechat 1"
    assert plan["usages"] == []


def test_status_flow(client, app):
    ids = _ids(app)
    plan = _plan(client, ids)
    url = f"/admin/production/plans/{plan['id']}/status"

    r = client.post(url, json={"status": "finished"})
    assert r.status_code == 409
    assert r.json["errors"] == ["Cannot move a plan from planning to finished."]
    assert client.post(url, json={"status": "paused"}).status_code == 409

    r = client.post(url, json={"status": "in_progress"})
    assert r.json["status"] == "in_progress"
    assert r.json["start_date"] == date.today().isoformat()

    r = client.post(url, json={"status": "finished"})
    assert r.json["end_date"] == date.today().isoformat()

    r = client.put(f"/admin/production/plans/{plan['id']}", json={"order_id": ids["order"], "machine_type": "pechat", "machine_id": ids["pechat"]})
    assert r.status_code == 409
    assert client.delete(f"/admin/production/plans/{plan['id']}").status_code == 409

    overview = client.get(f"/admin/machines/pechat/{ids['pechat']}").json["overview"]
    assert overview["plans_by_status"] == {"finished": 1}
    assert overview["produced_kg"] == 500


def test_material_usage_books_strict_outs(client, app):
    ids = _ids(app)
    plan = _plan(client, ids)
    film_id = _film(client)
    url = f"/admin/production/plans/{plan['id']}/usages"

    r = client.post(url, json={"kind": "film", "item_id": film_id, "amount": 30})
    assert r.status_code == 201, r.json
    usage = r.json
    assert usage["unit"] == "kg"
    assert usage["unit_price"] == 2.5
    assert usage["currency"] == "USD"
    assert usage["cost"] == 75
    assert client.get(f"/admin/inventory/film/{film_id}").json["quantity"] == 70

    r = client.post(url, json={"kind": "film", "item_id": film_id, "amount": 71})
    assert r.status_code == 409
    assert client.get(f"/admin/inventory/film/{film_id}").json["quantity"] == 70

    assert client.post(url, json={"kind": "gold", "item_id": 1, "amount": 1}).status_code == 400
    assert client.post(url, json={"kind": "film", "item_id": film_id, "amount": 0}).status_code == 400

    # The ledger row belongs to the plan.
    row = client.get(f"/admin/inventory/film/{film_id}").json["ledger"][0]
    assert row["plan_id"] == plan["id"]
    assert row["machine_id"] == ids["pechat"]
    assert row["order_id"] == ids["order"]
    assert client.delete(f"/admin/inventory/film/{film_id}/transactions/{row['id']}").status_code == 409

    assert client.delete(f"{url}/{usage['id']}").status_code == 200
    assert client.get(f"/admin/inventory/film/{film_id}").json["quantity"] == 100


def test_usage_closed_plan_and_delete_releases_stock(client, app):
    ids = _ids(app)
    film_id = _film(client)

    cancelled = _plan(client, ids)
    client.post(f"/admin/production/plans/{cancelled['id']}/status", json={"status": "cancelled"})
    r = client.post(f"/admin/production/plans/{cancelled['id']}/usages", json={"kind": "film", "item_id": film_id, "amount": 1})
    assert r.status_code == 400
    assert r.json["errors"] == ["Material cannot be issued to a cancelled plan."]

    plan = _plan(client, ids)
    client.post(f"/admin/production/plans/{plan['id']}/usages", json={"kind": "film", "item_id": film_id, "amount": 40})
    assert client.get(f"/admin/inventory/film/{film_id}").json["quantity"] == 60
    assert client.delete(f"/admin/production/plans/{plan['id']}").status_code == 200
    assert client.get(f"/admin/inventory/film/{film_id}").json["quantity"] == 100


def test_order_costs_per_currency(client, app):
    ids = _ids(app)
    plan = _plan(client, ids)
    film_id = _film(client, price=2)
    r = client.post("/admin/inventory/paint", json={"color_name": "Red", "initial_quantity": 50, "price_per_kg": 30000, "price_currency": "UZS"})
    paint_id = r.json["id"]

    url = f"/admin/production/plans/{plan['id']}/usages"
    client.post(url, json={"kind": "film", "item_id": film_id, "amount": 10})
    client.post(url, json={"kind": "film", "item_id": film_id, "amount": 5})
    client.post(url, json={"kind": "paint", "item_id": paint_id, "amount": 2})

    report = client.get(f"/admin/production/orders/{ids['order']}/costs").json
    assert len(report["rows"]) == 3
    assert report["totals"] == {"USD": 30, "UZS": 60000}


def test_machine_schedule_orders_by_start(client, app):
    ids = _ids(app)
    late = _plan(client, ids, start_date="2024-03-10")
    unscheduled = _plan(client, ids)
    early = _plan(client, ids, start_date="2024-03-01")
    _plan(client, ids, machine_type="reska", machine_id=ids["reska"], brigade_id=ids["brigade"])

    items = client.get(f"/admin/production/schedule/pechat/{ids['pechat']}").json["items"]
    assert [p["id"] for p in items] == [early["id"], late["id"], unscheduled["id"]]

    client.post(f"/admin/production/plans/{early['id']}/status", json={"status": "cancelled"})
    items = client.get(f"/admin/production/schedule/pechat/{ids['pechat']}?open_only=1").json["items"]
    assert [p["id"] for p in items] == [late["id"], unscheduled["id"]]

    assert client.get(f"/admin/production/schedule/printer/{ids['pechat']}").status_code == 404
    assert client.get("/admin/production/plans?machine_type=reska").json["total"] == 1
