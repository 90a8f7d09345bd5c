"""
Clients service layer.
Client profiles, complaints, monthly agreements, payment ledger, CRM leads,
tolling materials and the order book.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import (
    CLIENT_TRANSACTION_TYPES,
    COMPLAINT_STATUSES,
    CRM_STATUSES,
    CURRENCIES,
    FILM_CATEGORIES,
    LEDGER_CURRENCIES,
)
from app.polimaks.utils import (
    clean_str,
    current_month,
    month_of,
    parse_date,
    parse_float,
    parse_int,
    parse_month,
    raw_phone,
    validate_date_range,
    validate_phone,
)

from .models import Client, ClientTransaction, Complaint, CrmLead, MonthlyPlan, Order, TollingRecord

if TYPE_CHECKING:
    from app.polimaks.models import User


# UZS value of one unit; the client ledger is kept in UZS terms.
CURRENCY_RATES: dict[str, float] = {
    "UZS": 1,
    "USD": 11500,
}


def _apply(obj: Any, values: dict[str, Any]) -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    for attr, val in values.items():
        old = getattr(obj, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(obj, attr, val)
    return changes


def convert_to_display_currency(value: float, from_currency: str, to_currency: str, manual_rate: float | None = None) -> float:
    """
    Convert through UZS. `manual_rate` overrides the source currency's rate
    (UZS per one unit of `from_currency`).
    """
    from_rate = manual_rate or CURRENCY_RATES.get(from_currency, 1)
    to_rate = CURRENCY_RATES.get(to_currency, 1)
    if not from_rate or not to_rate:
        return value
    return value * from_rate / to_rate


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

def validate_client_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("full_name") or "").strip() and not (payload.get("company") or "").strip():
        errors.append("Full name or company is required.")
    err = validate_phone(payload.get("phone"), required=False)
    if err:
        errors.append(err)
    return errors


def _client_values(payload: dict) -> dict[str, Any]:
    return {
        "full_name": (payload.get("full_name") or "").strip(),
        "phone": raw_phone(payload.get("phone")),
        "company": clean_str(payload.get("company")),
        "notes": clean_str(payload.get("notes")),
    }


def create_client(s: Session, payload: dict, user: User) -> Client:
    now = datetime.utcnow()
    client = Client(**_client_values(payload), created_at=now, updated_at=now, created_by_user_id=user.id)
    s.add(client)
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.create",
        entity_type="Client",
        entity_id=str(client.id),
        metadata={"full_name": client.full_name, "company": client.company},
    )
    return client


def update_client(s: Session, client: Client, payload: dict, user: User) -> Client:
    changes = _apply(client, _client_values(payload))
    client.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="client.edit",
            entity_type="Client",
            entity_id=str(client.id),
            metadata={"changes": changes},
        )
    return client


def delete_client(s: Session, client: Client, user: User) -> None:
    if s.query(Order).filter(Order.client_id == client.id).first():
        raise ValueError("Client has orders in the order book and cannot be deleted.")
    record_event(
        s,
        actor=user,
        action="client.delete",
        entity_type="Client",
        entity_id=str(client.id),
        metadata={"full_name": client.full_name},
    )
    s.delete(client)


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------

def validate_complaint_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial or "title" in payload:
        if not (payload.get("title") or "").strip():
            errors.append("Complaint title is required.")
    if "status" in payload and payload.get("status") not in COMPLAINT_STATUSES:
        errors.append(f"Status must be one of: {', '.join(COMPLAINT_STATUSES)}.")
    return errors


def create_complaint(s: Session, client: Client, payload: dict, user: User) -> Complaint:
    status = payload.get("status") or "open"
    complaint = Complaint(
        client_id=client.id,
        title=payload["title"].strip(),
        description=clean_str(payload.get("description")),
        status=status,
        created_at=datetime.utcnow(),
        resolved_at=datetime.utcnow() if status == "resolved" else None,
    )
    s.add(complaint)
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.complaint.create",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"client_id": client.id, "title": complaint.title},
    )
    return complaint


def update_complaint(s: Session, complaint: Complaint, payload: dict, user: User) -> Complaint:
    values: dict[str, Any] = {}
    if "title" in payload:
        values["title"] = payload["title"].strip()
    if "description" in payload:
        values["description"] = clean_str(payload.get("description"))
    if "status" in payload:
        values["status"] = payload["status"]
    changes = _apply(complaint, values)
    if "status" in changes:
        complaint.resolved_at = datetime.utcnow() if complaint.status == "resolved" else None
    if changes:
        record_event(
            s,
            actor=user,
            action="client.complaint.edit",
            entity_type="Complaint",
            entity_id=str(complaint.id),
            metadata={"changes": changes},
        )
    return complaint


def delete_complaint(s: Session, complaint: Complaint, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="client.complaint.delete",
        entity_type="Complaint",
        entity_id=str(complaint.id),
        metadata={"client_id": complaint.client_id},
    )
    s.delete(complaint)


# ---------------------------------------------------------------------------
# Monthly agreements
# ---------------------------------------------------------------------------

def save_monthly_plan(s: Session, client: Client, month, limit_kg, user: User) -> MonthlyPlan:
    m = parse_month(month)
    limit = parse_float(limit_kg)
    if not m:
        raise ValueError("Month must be in YYYY-MM format.")
    if not limit or limit <= 0:
        raise ValueError("Limit must be a positive number.")

    plan = s.query(MonthlyPlan).filter(MonthlyPlan.client_id == client.id, MonthlyPlan.month == m).one_or_none()
    if plan is None:
        plan = MonthlyPlan(client_id=client.id, month=m, limit_kg=limit)
        s.add(plan)
    else:
        plan.limit_kg = limit
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.monthly_plan.save",
        entity_type="MonthlyPlan",
        entity_id=str(plan.id),
        metadata={"client_id": client.id, "month": m, "limit_kg": limit},
    )
    return plan


def delete_monthly_plan(s: Session, plan: MonthlyPlan, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="client.monthly_plan.delete",
        entity_type="MonthlyPlan",
        entity_id=str(plan.id),
        metadata={"client_id": plan.client_id, "month": plan.month},
    )
    s.delete(plan)


def ordered_kg_by_month(s: Session, client: Client) -> dict[str, float]:
    totals: dict[str, float] = {}
    for order in s.query(Order).filter(Order.client_id == client.id).all():
        key = month_of(order.date)
        if key:
            totals[key] = totals.get(key, 0.0) + (order.quantity_kg or 0.0)
    return totals


def agreement_rows(s: Session, client: Client, today: date | None = None) -> list[dict]:
    """
    Compare each agreed monthly limit with the kg actually ordered that month.
    Status: `hit` when achieved >= limit > 0, `in_progress` for the current
    month, `below_limit` for past months that fell short.
    """
    this_month = current_month(today)
    achieved_by_month = ordered_kg_by_month(s, client)
    rows = []
    for plan in sorted(client.monthly_plans, key=lambda p: p.month, reverse=True):
        achieved = achieved_by_month.get(plan.month, 0.0)
        if plan.limit_kg > 0 and achieved >= plan.limit_kg:
            status = "hit"
        elif plan.month == this_month:
            status = "in_progress"
        else:
            status = "below_limit"
        rows.append(
            {
                "id": plan.id,
                "month": plan.month,
                "limit_kg": plan.limit_kg,
                "achieved_kg": round(achieved, 3),
                "status": status,
                "is_current": plan.month == this_month,
            }
        )
    return rows


# ---------------------------------------------------------------------------
# Client payment ledger
# ---------------------------------------------------------------------------

def validate_client_transaction_payload(payload: dict) -> list[str]:
    errors = []
    if payload.get("type") not in CLIENT_TRANSACTION_TYPES:
        errors.append("Type must be 'promise' or 'payment'.")
    amount = parse_float(payload.get("amount"))
    if amount is None or amount <= 0:
        errors.append("Amount must be a positive number.")
    if (payload.get("currency") or "UZS") not in LEDGER_CURRENCIES:
        errors.append(f"Currency must be one of: {', '.join(LEDGER_CURRENCIES)}.")
    if payload.get("date") not in (None, "") and parse_date(payload.get("date")) is None:
        errors.append("Date is invalid.")
    rate = payload.get("exchange_rate")
    if rate not in (None, "") and (parse_float(rate) or 0) <= 0:
        errors.append("Exchange rate must be a positive number.")
    return errors


def _transaction_values(payload: dict) -> dict[str, Any]:
    rate = parse_float(payload.get("exchange_rate"))
    return {
        "type": payload["type"],
        "amount": parse_float(payload.get("amount")) or 0.0,
        "currency": payload.get("currency") or "UZS",
        "date": parse_date(payload.get("date")) or date.today(),
        "notes": clean_str(payload.get("notes")),
        "exchange_rate": rate if rate and rate > 0 else None,
    }


def create_client_transaction(s: Session, client: Client, payload: dict, user: User) -> ClientTransaction:
    tx = ClientTransaction(client_id=client.id, **_transaction_values(payload))
    s.add(tx)
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.transaction.create",
        entity_type="ClientTransaction",
        entity_id=str(tx.id),
        metadata={"client_id": client.id, "type": tx.type, "amount": tx.amount, "currency": tx.currency},
    )
    return tx


def update_client_transaction(s: Session, tx: ClientTransaction, payload: dict, user: User) -> ClientTransaction:
    changes = _apply(tx, _transaction_values(payload))
    if changes:
        record_event(
            s,
            actor=user,
            action="client.transaction.edit",
            entity_type="ClientTransaction",
            entity_id=str(tx.id),
            metadata={"changes": changes},
        )
    return tx


def delete_client_transaction(s: Session, tx: ClientTransaction, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="client.transaction.delete",
        entity_type="ClientTransaction",
        entity_id=str(tx.id),
        metadata={"client_id": tx.client_id, "amount": tx.amount, "currency": tx.currency},
    )
    s.delete(tx)


def client_statement(s: Session, client: Client, display_currency: str = "UZS") -> dict:
    """
    Everything that moves a client's balance, newest first:
    manual ledger rows, order-book promises (quantity x price), finance
    incomes linked to the client (payments) and finance expenses linked to
    the client (promises). Balance = paid - promised in `display_currency`.
    """
    from app.polimaks.modules.finance.models import FinanceEntry

    rows: list[dict] = []
    for tx in s.query(ClientTransaction).filter(ClientTransaction.client_id == client.id).all():
        rows.append(
            {
                "id": f"tx-{tx.id}",
                "source": "ledger",
                "type": tx.type,
                "amount": tx.amount,
                "currency": tx.currency,
                "date": tx.date,
                "notes": tx.notes or "",
                "exchange_rate": tx.exchange_rate,
            }
        )

    for order in s.query(Order).filter(Order.client_id == client.id).all():
        amount = (order.quantity_kg or 0) * (order.price_per_kg or 0)
        if amount <= 0:
            continue
        label = ": ".join(p for p in (f"Order {order.order_number}", order.title) if p)
        rows.append(
            {
                "id": f"orderbook-{order.id}",
                "source": "order_book",
                "type": "promise",
                "amount": amount,
                "currency": (order.price_currency or "UZS").upper(),
                "date": order.date,
                "notes": label,
                "exchange_rate": None,
            }
        )

    for entry in s.query(FinanceEntry).filter(FinanceEntry.client_id == client.id).all():
        direction_label = "Finance Income" if entry.direction == "income" else "Finance Expense"
        rows.append(
            {
                "id": f"finance-{entry.id}",
                "source": "finance",
                "type": "payment" if entry.direction == "income" else "promise",
                "amount": entry.amount,
                "currency": entry.currency,
                "date": entry.date,
                "notes": f"{direction_label}: {entry.name} - {entry.note or ''}".strip(),
                "exchange_rate": entry.exchange_rate,
            }
        )

    paid = 0.0
    promised = 0.0
    for row in rows:
        converted = convert_to_display_currency(row["amount"], row["currency"], display_currency, row["exchange_rate"])
        row["display_amount"] = round(converted, 2)
        if row["type"] == "payment":
            paid += converted
        else:
            promised += converted

    rows.sort(key=lambda r: (r["date"], r["id"]), reverse=True)
    return {
        "client_id": client.id,
        "display_currency": display_currency,
        "rows": rows,
        "paid": round(paid, 2),
        "promised": round(promised, 2),
        "balance": round(paid - promised, 2),
    }


# ---------------------------------------------------------------------------
# CRM leads
# ---------------------------------------------------------------------------

def validate_crm_lead_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("full_name") or "").strip():
        errors.append("Full name is required.")
    err = validate_phone(payload.get("phone"))
    if err:
        errors.append(err)
    if (payload.get("status") or "interested") not in CRM_STATUSES:
        errors.append(f"Status must be one of: {', '.join(CRM_STATUSES)}.")
    return errors


def _crm_values(payload: dict) -> dict[str, Any]:
    return {
        "full_name": (payload.get("full_name") or "").strip(),
        "phone": raw_phone(payload.get("phone")),
        "status": payload.get("status") or "interested",
        "company": clean_str(payload.get("company")),
        "note": clean_str(payload.get("note")),
    }


def create_crm_lead(s: Session, payload: dict, user: User) -> CrmLead:
    now = datetime.utcnow()
    lead = CrmLead(**_crm_values(payload), created_at=now, updated_at=now)
    s.add(lead)
    s.flush()
    record_event(
        s,
        actor=user,
        action="crm.lead.create",
        entity_type="CrmLead",
        entity_id=str(lead.id),
        metadata={"full_name": lead.full_name, "status": lead.status},
    )
    return lead


def update_crm_lead(s: Session, lead: CrmLead, payload: dict, user: User) -> CrmLead:
    changes = _apply(lead, _crm_values(payload))
    lead.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="crm.lead.edit",
            entity_type="CrmLead",
            entity_id=str(lead.id),
            metadata={"changes": changes},
        )
    return lead


def delete_crm_lead(s: Session, lead: CrmLead, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="crm.lead.delete",
        entity_type="CrmLead",
        entity_id=str(lead.id),
        metadata={"full_name": lead.full_name},
    )
    s.delete(lead)


def convert_lead_to_client(s: Session, lead: CrmLead, user: User) -> Client:
    client = create_client(
        s,
        {"full_name": lead.full_name, "phone": lead.phone, "company": lead.company, "notes": lead.note},
        user,
    )
    record_event(
        s,
        actor=user,
        action="crm.lead.convert",
        entity_type="CrmLead",
        entity_id=str(lead.id),
        metadata={"client_id": client.id},
    )
    s.delete(lead)
    return client


# ---------------------------------------------------------------------------
# Tolling materials
# ---------------------------------------------------------------------------

def validate_tolling_payload(s: Session, payload: dict) -> list[str]:
    errors = []
    client_id = parse_int(payload.get("client_id"))
    if client_id is None or s.get(Client, client_id) is None:
        errors.append("Client is required.")
    qty = parse_float(payload.get("quantity_kg"))
    if qty is None or qty < 0:
        errors.append("Quantity (kg) must be zero or more.")
    category = clean_str(payload.get("film_category"))
    sub = clean_str(payload.get("film_subcategory"))
    if category:
        if category not in FILM_CATEGORIES:
            errors.append(f"Film category must be one of: {', '.join(FILM_CATEGORIES)}.")
        elif sub and sub not in FILM_CATEGORIES[category]:
            errors.append(f"Sub-category '{sub}' does not belong to {category}.")
    elif sub:
        errors.append("Film sub-category requires a category.")
    return errors


def _tolling_values(payload: dict) -> dict[str, Any]:
    return {
        "client_id": parse_int(payload.get("client_id")),
        "type": clean_str(payload.get("type")),
        "order": clean_str(payload.get("order")),
        "quantity_kg": parse_float(payload.get("quantity_kg")) or 0.0,
        "color": clean_str(payload.get("color")),
        "film_category": clean_str(payload.get("film_category")),
        "film_subcategory": clean_str(payload.get("film_subcategory")),
        "notes": clean_str(payload.get("notes")),
    }


def create_tolling_record(s: Session, payload: dict, user: User) -> TollingRecord:
    rec = TollingRecord(**_tolling_values(payload), created_at=datetime.utcnow())
    s.add(rec)
    s.flush()
    record_event(
        s,
        actor=user,
        action="client.tolling.create",
        entity_type="TollingRecord",
        entity_id=str(rec.id),
        metadata={"client_id": rec.client_id, "quantity_kg": rec.quantity_kg},
    )
    return rec


def update_tolling_record(s: Session, rec: TollingRecord, payload: dict, user: User) -> TollingRecord:
    changes = _apply(rec, _tolling_values(payload))
    if changes:
        record_event(
            s,
            actor=user,
            action="client.tolling.edit",
            entity_type="TollingRecord",
            entity_id=str(rec.id),
            metadata={"changes": changes},
        )
    return rec


def delete_tolling_record(s: Session, rec: TollingRecord, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="client.tolling.delete",
        entity_type="TollingRecord",
        entity_id=str(rec.id),
        metadata={"client_id": rec.client_id},
    )
    s.delete(rec)


# ---------------------------------------------------------------------------
# Order book
# ---------------------------------------------------------------------------

def validate_order_payload(s: Session, payload: dict, *, existing: Order | None = None) -> list[str]:
    errors = []
    number = (payload.get("order_number") or "").strip()
    if not number:
        errors.append("Order number is required.")
    else:
        q = s.query(Order).filter(Order.order_number == number)
        if existing is not None:
            q = q.filter(Order.id != existing.id)
        if q.first():
            errors.append("Order number already exists.")
    client_id = parse_int(payload.get("client_id"))
    if client_id is None or s.get(Client, client_id) is None:
        errors.append("Client is required.")
    qty = parse_float(payload.get("quantity_kg"))
    if qty is None or qty <= 0:
        errors.append("Quantity (kg) must be a positive number.")
    material = payload.get("material") or "BOPP"
    if material not in FILM_CATEGORIES:
        errors.append(f"Material must be one of: {', '.join(FILM_CATEGORIES)}.")
    else:
        sub = clean_str(payload.get("sub_material"))
        if sub and sub not in FILM_CATEGORIES[material]:
            errors.append(f"Sub-material '{sub}' does not belong to {material}.")
    if (payload.get("price_currency") or "USD") not in CURRENCIES:
        errors.append(f"Currency must be one of: {', '.join(CURRENCIES)}.")
    price = parse_float(payload.get("price_per_kg"))
    if price is not None and price < 0:
        errors.append("Price per kg cannot be negative.")
    for field in ("date", "start_date", "end_date"):
        if payload.get(field) not in (None, "") and parse_date(payload.get(field)) is None:
            errors.append(f"{field.replace('_', ' ').capitalize()} is invalid.")
    range_err = validate_date_range(parse_date(payload.get("start_date")), parse_date(payload.get("end_date")))
    if range_err:
        errors.append(range_err)
    return errors


def _order_values(payload: dict) -> dict[str, Any]:
    return {
        "order_number": payload["order_number"].strip(),
        "date": parse_date(payload.get("date")) or date.today(),
        "client_id": parse_int(payload.get("client_id")),
        "title": (payload.get("title") or "").strip(),
        "quantity_kg": parse_float(payload.get("quantity_kg")) or 0.0,
        "material": payload.get("material") or "BOPP",
        "sub_material": clean_str(payload.get("sub_material")),
        "film_thickness": parse_float(payload.get("film_thickness")),
        "film_width": parse_float(payload.get("film_width")),
        "cylinder_length": parse_float(payload.get("cylinder_length")),
        "cylinder_count": parse_int(payload.get("cylinder_count")),
        "cylinder_circumference": parse_float(payload.get("cylinder_circumference")),
        "number_of_colors": parse_int(payload.get("number_of_colors")),
        "start_date": parse_date(payload.get("start_date")),
        "end_date": parse_date(payload.get("end_date")),
        "price_per_kg": parse_float(payload.get("price_per_kg")) or 0.0,
        "price_currency": payload.get("price_currency") or "USD",
        "admin": clean_str(payload.get("admin")),
    }


def create_order(s: Session, payload: dict, user: User) -> Order:
    now = datetime.utcnow()
    order = Order(**_order_values(payload), created_at=now, updated_at=now, created_by_user_id=user.id)
    s.add(order)
    s.flush()
    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"order_number": order.order_number, "client_id": order.client_id, "quantity_kg": order.quantity_kg},
    )
    return order


def update_order(s: Session, order: Order, payload: dict, user: User) -> Order:
    changes = _apply(order, _order_values(payload))
    order.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="order.edit",
            entity_type="Order",
            entity_id=str(order.id),
            metadata={"order_number": order.order_number, "changes": changes},
        )
    return order


def delete_order(s: Session, order: Order, user: User) -> None:
    from app.polimaks.modules.production.models import ProductionPlan

    if s.query(ProductionPlan).filter(ProductionPlan.order_id == order.id).first():
        raise ValueError("Order has production plans and cannot be deleted.")
    record_event(
        s,
        actor=user,
        action="order.delete",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"order_number": order.order_number},
    )
    s.delete(order)
