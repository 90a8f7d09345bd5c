"""
Legacy dashboard import and JSON snapshots.

The old dashboard kept everything in browser localStorage, one JSON array per
key. `import_local_storage` takes a dump of those keys and creates rows the
same way the dashboard normalised its entries on read: numbers coerced,
missing dates become today, unknown enum values fall back to their default.

Idempotency is not attempted: importing the same dump twice creates
duplicates, so run it once against a fresh database.
"""
from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import (
    CLIENT_TRANSACTION_TYPES,
    COMPLAINT_STATUSES,
    CRM_STATUSES,
    CURRENCIES,
    CYLINDER_ORIGINS,
    FILM_CATEGORIES,
    FINANCE_METHODS,
    LEDGER_CURRENCIES,
    SOLVENT_DENSITIES,
)
from app.polimaks.models import Base
from app.polimaks.modules.clients.models import (
    Client,
    ClientTransaction,
    Complaint,
    CrmLead,
    MonthlyPlan,
    Order,
    TollingRecord,
)
from app.polimaks.modules.finance.models import FinanceEntry, RateOverride
from app.polimaks.modules.inventory.models import (
    Cylinder,
    Film,
    FinishedProduct,
    Glue,
    LiquidPaint,
    Paint,
    Solvent,
    SparePart,
    Waste,
)
from app.polimaks.modules.mixtures.models import Mixture, MixtureComponent
from app.polimaks.modules.partners.models import Partner
from app.polimaks.modules.partners.service import normalize_categories
from app.polimaks.modules.staff.models import StaffMember
from app.polimaks.storage import Storage, StorageError
from app.polimaks.utils import clean_str, parse_date, parse_float, parse_month, raw_phone

if TYPE_CHECKING:
    from app.polimaks.models import User

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = "backups/"


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

def _num(value) -> float:
    if isinstance(value, bool):
        return 0.0
    return parse_float(value) or 0.0


def _text(value) -> str | None:
    if value is None:
        return None
    return clean_str(str(value))


def _day(value, today: date) -> date:
    if value in (None, ""):
        return today
    return parse_date(str(value)[:10]) or today


def _choice(value, allowed, default: str) -> str:
    return value if value in allowed else default


def _currency(value, allowed=CURRENCIES, default: str = "UZS") -> str:
    return _choice(str(value or "").upper(), allowed, default)


def _stock_common(entry: dict, today: date, user: User, quantity_field: str) -> dict[str, Any]:
    qty = max(_num(entry.get(quantity_field)), 0.0)
    now = datetime.utcnow()
    return {
        "initial_quantity": qty,
        "quantity": qty,
        "price_currency": _currency(entry.get("priceCurrency")),
        "description": _text(entry.get("description")),
        "created_date": _day(entry.get("createdDate"), today),
        "created_at": now,
        "updated_at": now,
        "created_by_user_id": user.id,
    }


class _Importer:
    """Keeps the legacy id -> row maps needed to link records across keys."""

    def __init__(self, s: Session, user: User, today: date):
        self.s = s
        self.user = user
        self.today = today
        self.clients: dict[str, Client] = {}
        self.solvents: dict[str, Solvent] = {}

    def forget(self, row) -> None:
        for lookup in (self.clients, self.solvents):
            for legacy_id in [k for k, v in lookup.items() if v is row]:
                del lookup[legacy_id]

    def _client_for(self, entry: dict) -> Client | None:
        client = self.clients.get(str(entry.get("clientId") or ""))
        if client is not None:
            return client
        name = _text(entry.get("clientName"))
        if not name:
            return None
        return self.s.query(Client).filter(Client.full_name == name).first()

    # -- warehouse ----------------------------------------------------------

    def film(self, entry: dict):
        category = _choice(entry.get("category"), FILM_CATEGORIES, "BOPP")
        sub = entry.get("subcategory")
        return Film(
            **_stock_common(entry, self.today, self.user, "totalKg"),
            category=category,
            subcategory=sub if sub in FILM_CATEGORIES[category] else None,
            thickness=_num(entry.get("thickness")),
            width=_num(entry.get("width")),
            price_per_kg=_num(entry.get("pricePerKg")),
            series_number=_text(entry.get("seriyaNumber")),
            admin=_text(entry.get("admin")),
        )

    def _paint(self, model: type, entry: dict):
        return model(
            **_stock_common(entry, self.today, self.user, "totalKg"),
            color_name=_text(entry.get("colorName")) or "",
            color_hex=_text(entry.get("colorHex")) or "#000000",
            price_per_kg=_num(entry.get("pricePerKg")),
            series_number=_text(entry.get("seriyaNumber")),
            marka=_text(entry.get("marka")),
            supplier=_text(entry.get("supplier")),
        )

    def paint(self, entry: dict):
        return self._paint(Paint, entry)

    def liquid_paint(self, entry: dict):
        return self._paint(LiquidPaint, entry)

    def glue(self, entry: dict):
        return Glue(
            **_stock_common(entry, self.today, self.user, "barrels"),
            received_date=_day(entry.get("receivedDate"), self.today),
            number_identifier=_text(entry.get("numberIdentifier")),
            type=_text(entry.get("type")),
            supplier=_text(entry.get("supplier")),
            name=_text(entry.get("name")) or "",
            net_weight=_num(entry.get("netWeight")),
            gross_weight=_num(entry.get("grossWeight")),
            price=_num(entry.get("price")),
        )

    def solvent(self, entry: dict):
        item = Solvent(
            **_stock_common(entry, self.today, self.user, "totalLiter"),
            type=_choice(str(entry.get("type") or "").lower(), SOLVENT_DENSITIES, "eaf"),
            price_per_liter=_num(entry.get("pricePerLiter")),
            series_number=_text(entry.get("seriyaNumber")),
            supplier=_text(entry.get("supplier")),
        )
        if entry.get("id"):
            self.solvents[str(entry["id"])] = item
        return item

    def cylinder(self, entry: dict):
        return Cylinder(
            **_stock_common(entry, self.today, self.user, "quantity"),
            origin=_choice(entry.get("origin"), CYLINDER_ORIGINS, "china"),
            series_number=_text(entry.get("seriyaNumber")),
            length=_num(entry.get("length")),
            diameter=_num(entry.get("diameter")),
            usage=_num(entry.get("usage")),
            usage_limit=_num(entry.get("usageLimit")),
            price=_num(entry.get("price")),
        )

    def spare_part(self, entry: dict):
        return SparePart(
            **_stock_common(entry, self.today, self.user, "quantity"),
            title=_text(entry.get("title")) or "",
            price=_num(entry.get("price")),
        )

    def waste(self, entry: dict):
        return Waste(
            **_stock_common(entry, self.today, self.user, "totalKg"),
            title=_text(entry.get("title")) or "",
            price_per_kg=_num(entry.get("pricePerKg")),
        )

    def _finished(self, entry: dict, location: str):
        return FinishedProduct(
            **_stock_common(entry, self.today, self.user, "totalKg"),
            location=location,
            title=_text(entry.get("title")) or "",
            total_meter=_num(entry.get("totalMeter")),
            price_per_kg=_num(entry.get("pricePerKg")),
        )

    def finished_tashkent(self, entry: dict):
        return self._finished(entry, "tashkent")

    def finished_angren(self, entry: dict):
        return self._finished(entry, "angren")

    def mixture(self, entry: dict):
        # The dashboard already deducted the solvents when the mixture was made,
        # so the imported mixture carries no ledger movements.
        total_liter = max(_num(entry.get("totalLiter")), 0.0)
        price_per_liter = _num(entry.get("pricePerLiter"))
        mixture = Mixture(
            name=_text(entry.get("name")) or "Mixture",
            initial_liter=total_liter,
            total_liter=total_liter,
            total_kg=_num(entry.get("totalKg")),
            total_cost=round(total_liter * price_per_liter, 2),
            price_per_liter=price_per_liter,
            price_per_kg=_num(entry.get("pricePerKg")),
            price_currency=_currency(entry.get("priceCurrency"), default="USD"),
            created_date=_day(entry.get("createdDate"), self.today),
            created_by_user_id=self.user.id,
        )
        for solvent_type in SOLVENT_DENSITIES:
            comp = entry.get(f"{solvent_type}Component")
            if not isinstance(comp, dict) or _num(comp.get("quantity")) <= 0:
                continue
            solvent = self.solvents.get(str(comp.get("razvaritelId") or ""))
            mixture.components.append(
                MixtureComponent(
                    solvent_id=solvent.id if solvent is not None else None,
                    solvent_type=solvent_type,
                    quantity_liter=_num(comp.get("quantity")),
                )
            )
        return mixture

    # -- clients ------------------------------------------------------------

    def client(self, entry: dict):
        now = datetime.utcnow()
        client = Client(
            full_name=_text(entry.get("fullName")) or "",
            phone=raw_phone(str(entry.get("phone") or "")),
            company=_text(entry.get("company")),
            notes=_text(entry.get("notes")),
            created_at=now,
            updated_at=now,
            created_by_user_id=self.user.id,
        )
        for c in entry.get("complaints") or []:
            if not isinstance(c, dict) or not _text(c.get("message")):
                continue
            status = _choice(c.get("status"), COMPLAINT_STATUSES, "open")
            client.complaints.append(
                Complaint(
                    title=_text(c.get("message"))[:255],
                    status=status,
                    created_at=_when(c.get("createdAt")) or now,
                    resolved_at=_when(c.get("resolvedAt")) if status == "resolved" else None,
                )
            )
        limits: dict[str, float] = {}
        for p in entry.get("monthlyPlans") or []:
            month = parse_month(p.get("month")) if isinstance(p, dict) else None
            if month:
                # one plan per month; a repeated month replaces the earlier limit
                limits[month] = max(_num(p.get("limit")), 0.0)
        for month, limit in limits.items():
            client.monthly_plans.append(MonthlyPlan(month=month, limit_kg=limit))
        if entry.get("id"):
            self.clients[str(entry["id"])] = client
        return client

    def complaint(self, entry: dict):
        client = self._client_for(entry)
        if client is None or not _text(entry.get("title")):
            return None
        status = _choice(entry.get("status"), COMPLAINT_STATUSES, "open")
        return Complaint(
            client=client,
            title=_text(entry.get("title"))[:255],
            description=_text(entry.get("description")),
            status=status,
            created_at=_when(entry.get("createdAt")) or datetime.utcnow(),
            resolved_at=datetime.utcnow() if status == "resolved" else None,
        )

    def client_transaction(self, entry: dict):
        client = self._client_for(entry)
        if client is None:
            return None
        rate = _num(entry.get("exchangeRate"))
        return ClientTransaction(
            client=client,
            type=_choice(entry.get("type"), CLIENT_TRANSACTION_TYPES, "payment"),
            amount=max(_num(entry.get("amount")), 0.0),
            currency=_currency(entry.get("currency"), LEDGER_CURRENCIES),
            date=_day(entry.get("date"), self.today),
            notes=_text(entry.get("notes")),
            exchange_rate=rate if rate > 0 else None,
        )

    def tolling(self, entry: dict):
        client = self._client_for(entry)
        if client is None:
            return None
        category = entry.get("filmCategory")
        return TollingRecord(
            client_id=client.id,
            type=_text(entry.get("type")),
            order=_text(entry.get("order")),
            quantity_kg=max(_num(entry.get("quantityKg")), 0.0),
            color=_text(entry.get("color")),
            film_category=category if category in FILM_CATEGORIES else None,
            film_subcategory=_text(entry.get("filmSubcategory")),
            notes=_text(entry.get("notes")),
        )

    def crm_lead(self, entry: dict):
        now = datetime.utcnow()
        return CrmLead(
            full_name=_text(entry.get("fullName")) or "",
            phone=raw_phone(str(entry.get("phone") or "")),
            status=_choice(entry.get("status"), CRM_STATUSES, "interested"),
            company=_text(entry.get("company")),
            note=_text(entry.get("note")),
            created_at=now,
            updated_at=now,
        )

    def order(self, entry: dict):
        client = self._client_for(entry)
        number = _text(entry.get("orderNumber"))
        if client is None or not number:
            return None
        if self.s.query(Order.id).filter(Order.order_number == number).first() is not None:
            return None
        now = datetime.utcnow()
        start = parse_date(str(entry.get("startDate") or "")[:10])
        end = parse_date(str(entry.get("endDate") or "")[:10])
        if start and end and end < start:
            end = None
        return Order(
            order_number=number,
            date=_day(entry.get("date"), self.today),
            client_id=client.id,
            title=_text(entry.get("title")) or "",
            quantity_kg=max(_num(entry.get("quantityKg")), 0.0),
            material=_choice(entry.get("material"), FILM_CATEGORIES, "BOPP"),
            sub_material=_text(entry.get("subMaterial")),
            film_thickness=_num(entry.get("filmThickness")) or None,
            film_width=_num(entry.get("filmWidth")) or None,
            cylinder_length=_num(entry.get("cylinderLength")) or None,
            cylinder_count=int(_num(entry.get("cylinderCount"))) or None,
            cylinder_circumference=_num(entry.get("cylinderAylanasi")) or None,
            number_of_colors=int(_num(entry.get("numberOfColors"))) or None,
            start_date=start,
            end_date=end,
            price_per_kg=max(_num(entry.get("pricePerKg")), 0.0),
            price_currency=_currency(entry.get("priceCurrency"), default="USD"),
            admin=_text(entry.get("admin")),
            created_at=now,
            updated_at=now,
            created_by_user_id=self.user.id,
        )

    # -- everything else ----------------------------------------------------

    def partner(self, entry: dict):
        now = datetime.utcnow()
        return Partner(
            full_name=_text(entry.get("fullName")) or "",
            phone=raw_phone(str(entry.get("phone") or "")),
            company=_text(entry.get("company")),
            notes=_text(entry.get("notes")),
            categories=normalize_categories(entry.get("categories")),
            created_at=now,
            updated_at=now,
            created_by_user_id=self.user.id,
        )

    def worker(self, entry: dict):
        name = _text(entry.get("name"))
        if not name:
            return None
        now = datetime.utcnow()
        return StaffMember(
            role="worker",
            name=name,
            phone=raw_phone(str(entry.get("phone") or "")),
            description=_text(entry.get("description")),
            created_at=now,
            updated_at=now,
            created_by_user_id=self.user.id,
        )

    def _finance(self, entry: dict, direction: str):
        rate = _num(entry.get("exchangeRate"))
        return FinanceEntry(
            direction=direction,
            name=_text(entry.get("name")) or "",
            method=_choice(entry.get("type"), FINANCE_METHODS, "cash"),
            amount=max(_num(entry.get("amount")), 0.0),
            currency=_currency(entry.get("currency"), LEDGER_CURRENCIES),
            date=_day(entry.get("date"), self.today),
            note=_text(entry.get("note")),
            exchange_rate=rate if rate > 0 else None,
            created_by_user_id=self.user.id,
        )

    def income(self, entry: dict):
        return self._finance(entry, "income")

    def expense(self, entry: dict):
        return self._finance(entry, "expense")


def _when(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.utcfromtimestamp(value / 1000)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None


# Order matters: clients and solvents are imported before the records that point at them.
IMPORT_KEYS: tuple[tuple[str, Callable[[_Importer], Callable[[dict], Any]]], ...] = (
    ("ombor-plyonka", lambda i: i.film),
    ("ombor-kraska", lambda i: i.paint),
    ("ombor-suyuq-kraska", lambda i: i.liquid_paint),
    ("ombor-kley", lambda i: i.glue),
    ("ombor-razvaritel", lambda i: i.solvent),
    ("ombor-silindir", lambda i: i.cylinder),
    ("ombor-zapchastlar", lambda i: i.spare_part),
    ("ombor-otxot", lambda i: i.waste),
    ("ombor-tayyor-mahsulotlar", lambda i: i.finished_tashkent),
    ("ombor-tayyor-mahsulotlar-angren", lambda i: i.finished_angren),
    ("ombor-razvaritel-mixtures", lambda i: i.mixture),
    ("clients-main", lambda i: i.client),
    ("clients-complaints", lambda i: i.complaint),
    ("clients-transactions", lambda i: i.client_transaction),
    ("clients-tolling-materials", lambda i: i.tolling),
    ("clients-crm", lambda i: i.crm_lead),
    ("clients-order-book", lambda i: i.order),
    ("partners-main", lambda i: i.partner),
    ("staff-workers", lambda i: i.worker),
    ("finance-income", lambda i: i.income),
    ("finance-expense", lambda i: i.expense),
)
RATES_KEY = "finance-rates"


def _decode(raw) -> Any:
    if isinstance(raw, (bytes, str)):
        return json.loads(raw)
    return raw


def _import_rates(s: Session, overrides: dict) -> int:
    count = 0
    for day, by_currency in overrides.items():
        on_date = parse_date(str(day)[:10])
        if on_date is None or not isinstance(by_currency, dict):
            continue
        for currency, value in by_currency.items():
            rate = _num(value)
            if currency not in CURRENCIES or rate <= 0:
                continue
            existing = s.query(RateOverride).filter(RateOverride.date == on_date, RateOverride.currency == currency).one_or_none()
            if existing is None:
                s.add(RateOverride(date=on_date, currency=currency, rate=rate))
            else:
                existing.rate = rate
            count += 1
    return count


def import_local_storage(s: Session, dump: dict, user: User, *, today: date | None = None) -> dict:
    """
    Import a `{storage_key: json_string | list}` dump.
    Returns {"created": {key: n}, "skipped": [{"key", "error"} or {"key", "id", "error"}], "ignored": [keys]}.
    """
    importer = _Importer(s, user, today or date.today())
    created: dict[str, int] = {}
    skipped: list[dict[str, str]] = []
    known = {key for key, _ in IMPORT_KEYS} | {RATES_KEY}

    for key, builder in IMPORT_KEYS:
        if key not in dump:
            continue
        try:
            entries = _decode(dump[key])
        except (TypeError, ValueError) as e:
            logger.warning("legacy import: key %s is not valid JSON: %s", key, e)
            skipped.append({"key": key, "error": "invalid JSON"})
            continue
        if not isinstance(entries, list):
            logger.warning("legacy import: key %s does not hold a list", key)
            skipped.append({"key": key, "error": "expected a list"})
            continue
        build = builder(importer)
        n = 0
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            row = build(entry)
            if row is None:
                continue
            try:
                with s.begin_nested():
                    s.add(row)
                    # Later keys look rows up by id or name.
                    s.flush()
            except IntegrityError as e:
                logger.warning("legacy import: skipping %s entry %s: %s", key, entry.get("id"), e.orig)
                importer.forget(row)
                skipped.append({"key": key, "id": str(entry.get("id") or ""), "error": "conflicts with existing data"})
                continue
            n += 1
        created[key] = n

    if RATES_KEY in dump:
        try:
            overrides = _decode(dump[RATES_KEY])
        except (TypeError, ValueError) as e:
            logger.warning("legacy import: key %s is not valid JSON: %s", RATES_KEY, e)
            skipped.append({"key": RATES_KEY, "error": "invalid JSON"})
        else:
            if isinstance(overrides, dict):
                created[RATES_KEY] = _import_rates(s, overrides)
            else:
                skipped.append({"key": RATES_KEY, "error": "expected an object"})

    ignored = sorted(k for k in dump if k not in known)
    record_event(
        s,
        actor=user,
        action="backup.import",
        entity_type="LegacyImport",
        metadata={"created": created, "skipped": [x["key"] for x in skipped], "ignored": ignored},
    )
    logger.info("legacy import finished: %s", created)
    return {"created": created, "skipped": skipped, "ignored": ignored}


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

# Auth tables stay out of snapshots: they hold password hashes.
SNAPSHOT_EXCLUDED_TABLES = frozenset({"users", "roles", "permissions", "user_roles", "role_permissions", "audit_events"})


def build_snapshot(s: Session) -> dict:
    tables: dict[str, list[dict]] = {}
    for table in Base.metadata.sorted_tables:
        if table.name in SNAPSHOT_EXCLUDED_TABLES:
            continue
        rows = s.execute(table.select().order_by(*table.primary_key.columns)).mappings().all()
        tables[table.name] = [dict(r) for r in rows]
    return {"created_at": datetime.utcnow().isoformat(timespec="seconds") + "Z", "tables": tables}


def export_snapshot(s: Session, storage: Storage, user: User) -> dict:
    snapshot = build_snapshot(s)
    key = f"{SNAPSHOT_PREFIX}{datetime.utcnow().strftime('%Y%m%dT%H%M%S%fZ')}.json"
    data = json.dumps(snapshot, default=str, ensure_ascii=False).encode("utf-8")
    storage.put_bytes(key, data, content_type="application/json")
    counts = {name: len(rows) for name, rows in snapshot["tables"].items()}
    record_event(
        s,
        actor=user,
        action="backup.export",
        entity_type="Snapshot",
        entity_id=key,
        metadata={"bytes": len(data), "rows": sum(counts.values())},
    )
    logger.info("snapshot written: %s (%d bytes)", key, len(data))
    return {"key": key, "bytes": len(data), "counts": counts}


def list_snapshots(storage: Storage) -> list[str]:
    """Newest first."""
    keys = [k for k in storage.list_keys(SNAPSHOT_PREFIX) if k.endswith(".json")]
    return sorted(keys, reverse=True)


def read_snapshot(storage: Storage, name: str) -> dict:
    key = name if name.startswith(SNAPSHOT_PREFIX) else f"{SNAPSHOT_PREFIX}{name}"
    if "/" in key[len(SNAPSHOT_PREFIX):] or not key.endswith(".json"):
        raise StorageError(f"Invalid snapshot name: {name}")
    f = storage.open(key)
    try:
        return json.loads(f.read().decode("utf-8"))
    finally:
        f.close()
