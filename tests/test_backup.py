"""Legacy dashboard import and JSON snapshots."""
import json
from datetime import date

import pytest
from botocore.exceptions import ClientError
from werkzeug.security import generate_password_hash

from app.polimaks import create_app
from app.polimaks.auth import _login_attempts
from app.polimaks.db import session_scope
from app.polimaks.models import AuditEvent, Base, Permission, Role, User
from app.polimaks.modules.clients.models import Client, ClientTransaction, Order
from app.polimaks.modules.finance.models import FinanceEntry, RateOverride
from app.polimaks.modules.inventory.models import Film, Solvent
from app.polimaks.modules.mixtures.models import Mixture
from app.polimaks.modules.staff.models import StaffMember
from app.polimaks.storage import S3Storage


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)
    _login_attempts.clear()

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        r = Role(key="admin", name="Admin")
        for key in ("admin.view", "backup.view", "backup.edit"):
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


def _dump() -> dict:
    # Values are the raw localStorage strings, as the dashboard stored them.
    return {
        "ombor-plyonka": json.dumps(
            [
                {
                    "id": "f1",
                    "category": "BOPP",
                    "subcategory": "gold",
                    "thickness": "20",
                    "width": 1000,
                    "totalKg": "150",
                    "pricePerKg": 2.5,
                    "priceCurrency": "usd",
                    "createdDate": "2024-01-05T10:00:00.000Z",
                }
            ]
        ),
        "ombor-razvaritel": json.dumps([{"id": "s1", "type": "EAF", "totalLiter": 100, "pricePerLiter": 2}]),
        "ombor-razvaritel-mixtures": json.dumps(
            [{"id": "m1", "name": "Mix", "totalLiter": 20, "pricePerLiter": 2, "eafComponent": {"razvaritelId": "s1", "quantity": 20}}]
        ),
        "clients-main": json.dumps(
            [
                {
                    "id": "c1",
                    "fullName": "Aziz Karimov",
                    "phone": "90 555-11-22",
                    "complaints": [{"message": "Late delivery", "status": "resolved", "createdAt": 1704067200000}],
                    "monthlyPlans": [{"month": "2024-01", "limit": 100}, {"month": "January", "limit": 5}],
                }
            ]
        ),
        "clients-transactions": json.dumps([{"clientName": "Aziz Karimov", "type": "payment", "amount": 100, "currency": "EUR"}]),
        "clients-order-book": json.dumps(
            [
                {"orderNumber": "A-1", "clientId": "c1", "quantityKg": 120, "date": "2024-01-10", "endDate": "2024-01-01", "startDate": "2024-01-05"},
                {"orderNumber": "A-1", "clientId": "c1", "quantityKg": 5},
                {"orderNumber": "A-2", "clientName": "Nobody"},
            ]
        ),
        "clients-crm": json.dumps({"not": "a list"}),
        "partners-main": "{broken",
        "staff-workers": json.dumps([{"name": "Bobur", "phone": "901112233"}, {"name": ""}]),
        "finance-income": json.dumps([{"name": "Sale", "type": "transfer", "amount": "500", "currency": "USD", "date": "2024-01-12", "exchangeRate": "12 600"}]),
        "finance-rates": json.dumps({"2024-01-12": {"USD": 1, "RUB": "91.5", "GBP": 2, "UZS": 0}}),
        "theme": "dark",
    }


def test_import_reports_created_skipped_and_ignored(client):
    r = client.post("/admin/backup/import", json=_dump())
    assert r.status_code == 201, r.json
    assert r.json["created"] == {
        "ombor-plyonka": 1,
        "ombor-razvaritel": 1,
        "ombor-razvaritel-mixtures": 1,
        "clients-main": 1,
        "clients-transactions": 1,
        "clients-order-book": 1,
        "staff-workers": 1,
        "finance-income": 1,
        "finance-rates": 2,
    }
    assert r.json["skipped"] == [
        {"key": "clients-crm", "error": "expected a list"},
        {"key": "partners-main", "error": "invalid JSON"},
    ]
    assert r.json["ignored"] == ["theme"]


def test_imported_rows_are_normalised(client, app):
    client.post("/admin/backup/import", json={"dump": _dump()})
    with session_scope(app) as s:
        film = s.query(Film).one()
        assert film.subcategory is None
        assert film.quantity == 150
        assert film.price_currency == "USD"
        assert film.created_date == date(2024, 1, 5)

        solvent = s.query(Solvent).one()
        mixture = s.query(Mixture).one()
        # Mixtures come in already made; the solvent is not deducted again.
        assert solvent.quantity == 100
        assert solvent.type == "eaf"
        assert mixture.total_liter == 20
        assert mixture.components[0].solvent_id == solvent.id

        aziz = s.query(Client).one()
        assert aziz.phone == "905551122"
        assert [c.status for c in aziz.complaints] == ["resolved"]
        assert [p.month for p in aziz.monthly_plans] == ["2024-01"]

        order = s.query(Order).one()
        assert order.client_id == aziz.id
        assert order.end_date is None

        tx = s.query(ClientTransaction).one()
        assert tx.currency == "UZS"

        entry = s.query(FinanceEntry).one()
        assert (entry.direction, entry.method, entry.currency, entry.amount) == ("income", "transfer", "USD", 500)
        assert entry.exchange_rate == 12600

        assert s.query(StaffMember).one().role == "worker"
        assert {r.currency: r.rate for r in s.query(RateOverride).all()} == {"USD": 1, "RUB": 91.5}

        event = s.query(AuditEvent).filter(AuditEvent.action == "backup.import").one()
        assert json.loads(event.metadata_json)["ignored"] == ["theme"]


def test_import_needs_a_dump(client):
    r = client.post("/admin/backup/import", json={})
    assert r.status_code == 400
    assert r.json["errors"] == ["Nothing to import."]


def test_overview_counts_after_import(client):
    client.post("/admin/backup/import", json=_dump())
    counts = client.get("/admin/").json["counts"]
    assert counts["clients"] == 1
    assert counts["open_complaints"] == 0
    assert counts["inventory"]["film"] == 1
    assert counts["inventory"]["solvent"] == 1
    assert counts["plans_in_progress"] == 0


def test_snapshot_export_list_and_read(client):
    client.post("/admin/backup/import", json=_dump())
    assert client.get("/admin/backup/snapshots").json["items"] == []

    r = client.post("/admin/backup/snapshots")
    assert r.status_code == 201
    key = r.json["key"]
    assert key.startswith("backups/") and key.endswith(".json")
    assert r.json["counts"]["clients"] == 1
    assert "users" not in r.json["counts"]
    assert "audit_events" not in r.json["counts"]

    assert client.get("/admin/backup/snapshots").json["items"] == [key]

    name = key[len("backups/"):]
    summary = client.get(f"/admin/backup/snapshots/{name}?summary=1").json
    assert summary["counts"]["inventory_films"] == 1

    full = client.get(f"/admin/backup/snapshots/{key}").json
    assert full["tables"]["clients"][0]["full_name"] == "Aziz Karimov"

    assert client.get("/admin/backup/snapshots/missing.json").status_code == 404
    assert client.get("/admin/backup/snapshots/nested/x.json").status_code == 404


def test_repeated_plan_month_keeps_the_last_limit(client, app):
    dump = {
        "clients-main": json.dumps(
            [
                {
                    "id": "c1",
                    "fullName": "A",
                    "monthlyPlans": [{"month": "2024-01", "limit": 10}, {"month": "2024-01", "limit": 20}],
                },
                {"id": "c2", "fullName": "B", "monthlyPlans": [{"month": "2024-01", "limit": 5}]},
            ]
        )
    }
    r = client.post("/admin/backup/import", json=dump)
    assert r.status_code == 201, r.json
    assert r.json["created"] == {"clients-main": 2}
    assert r.json["skipped"] == []
    with session_scope(app) as s:
        a = s.query(Client).filter(Client.full_name == "A").one()
        assert [(p.month, p.limit_kg) for p in a.monthly_plans] == [("2024-01", 20)]


class _MissingKeyS3:
    def get_object(self, Bucket, Key):
        raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "Not Found"}}, "GetObject")


def test_missing_s3_snapshot_is_404(client, app, monkeypatch):
    app.config.update(
        STORAGE_BACKEND="s3",
        S3_ENDPOINT="s3.example.test",
        S3_BUCKET="polimaks",
        S3_ACCESS_KEY_ID="key",
        S3_SECRET_ACCESS_KEY="secret",
    )
    monkeypatch.setattr(S3Storage, "_client", lambda self: _MissingKeyS3())
    assert client.get("/admin/backup/snapshots/20240101T000000.json").status_code == 404
