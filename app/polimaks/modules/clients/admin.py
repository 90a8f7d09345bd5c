from __future__ import annotations

from flask import Blueprint, abort, request
from sqlalchemy import or_

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload, pagination_args
from app.polimaks.constants import LEDGER_CURRENCIES
from app.polimaks.db import db_session
from app.polimaks.modules.clients.models import (
    Client,
    ClientTransaction,
    Complaint,
    CrmLead,
    MonthlyPlan,
    Order,
    TollingRecord,
)
from app.polimaks.modules.clients.service import (
    agreement_rows,
    client_statement,
    convert_lead_to_client,
    create_client,
    create_client_transaction,
    create_complaint,
    create_crm_lead,
    create_order,
    create_tolling_record,
    delete_client,
    delete_client_transaction,
    delete_complaint,
    delete_crm_lead,
    delete_monthly_plan,
    delete_order,
    delete_tolling_record,
    save_monthly_plan,
    update_client,
    update_client_transaction,
    update_complaint,
    update_crm_lead,
    update_order,
    update_tolling_record,
    validate_client_payload,
    validate_client_transaction_payload,
    validate_complaint_payload,
    validate_crm_lead_payload,
    validate_order_payload,
    validate_tolling_payload,
)
from app.polimaks.rbac import require_permission
from app.polimaks.utils import format_phone, parse_date

bp = Blueprint("clients", __name__)


def serialize_client(c: Client, *, detail: bool = False) -> dict:
    data = {
        "id": c.id,
        "full_name": c.full_name,
        "display_name": c.display_name,
        "phone": c.phone,
        "phone_display": format_phone(c.phone),
        "company": c.company or "",
        "notes": c.notes or "",
        "created_at": iso(c.created_at),
        "updated_at": iso(c.updated_at),
    }
    if detail:
        data["complaints"] = [serialize_complaint(x) for x in c.complaints]
    return data


def serialize_complaint(c: Complaint) -> dict:
    return {
        "id": c.id,
        "client_id": c.client_id,
        "title": c.title,
        "description": c.description or "",
        "status": c.status,
        "created_at": iso(c.created_at),
        "resolved_at": iso(c.resolved_at),
    }


def serialize_transaction(tx: ClientTransaction) -> dict:
    return {
        "id": tx.id,
        "client_id": tx.client_id,
        "type": tx.type,
        "amount": tx.amount,
        "currency": tx.currency,
        "date": iso(tx.date),
        "notes": tx.notes or "",
        "exchange_rate": tx.exchange_rate,
    }


def serialize_lead(lead: CrmLead) -> dict:
    return {
        "id": lead.id,
        "full_name": lead.full_name,
        "phone": lead.phone,
        "phone_display": format_phone(lead.phone),
        "status": lead.status,
        "company": lead.company or "",
        "note": lead.note or "",
        "created_at": iso(lead.created_at),
        "updated_at": iso(lead.updated_at),
    }


def serialize_tolling(rec: TollingRecord) -> dict:
    return {
        "id": rec.id,
        "client_id": rec.client_id,
        "client_name": rec.client.display_name if rec.client else None,
        "type": rec.type or "",
        "order": rec.order or "",
        "quantity_kg": rec.quantity_kg,
        "color": rec.color or "",
        "film_category": rec.film_category,
        "film_subcategory": rec.film_subcategory,
        "notes": rec.notes or "",
        "created_at": iso(rec.created_at),
    }


def serialize_order(o: Order) -> dict:
    return {
        "id": o.id,
        "order_number": o.order_number,
        "label": o.label,
        "date": iso(o.date),
        "client_id": o.client_id,
        "client_name": o.client.display_name if o.client else None,
        "title": o.title,
        "quantity_kg": o.quantity_kg,
        "material": o.material,
        "sub_material": o.sub_material,
        "film_thickness": o.film_thickness,
        "film_width": o.film_width,
        "cylinder_length": o.cylinder_length,
        "cylinder_count": o.cylinder_count,
        "cylinder_circumference": o.cylinder_circumference,
        "number_of_colors": o.number_of_colors,
        "start_date": iso(o.start_date),
        "end_date": iso(o.end_date),
        "price_per_kg": o.price_per_kg,
        "price_currency": o.price_currency,
        "admin": o.admin or "",
    }


def _child_or_404(s, model, obj_id: int, client_id: int):
    obj = get_or_404(s, model, obj_id)
    if obj.client_id != client_id:
        abort(404)
    return obj


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

@bp.get("/clients")
@require_permission("clients.view")
def clients_list():
    s = db_session()
    q = s.query(Client)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Client.full_name.ilike(like), Client.company.ilike(like), Client.phone.ilike(like)))
    skip, limit = pagination_args()
    total = q.count()
    items = q.order_by(Client.full_name.asc(), Client.id.asc()).offset(skip).limit(limit).all()
    return {"total": total, "skip": skip, "limit": limit, "items": [serialize_client(c) for c in items]}


@bp.post("/clients")
@require_permission("clients.edit")
def clients_create():
    s = db_session()
    payload = json_payload()
    errors = validate_client_payload(payload)
    if errors:
        return errors_response(errors)
    client = create_client(s, payload, current_user())
    s.commit()
    return serialize_client(client, detail=True), 201


@bp.get("/clients/<int:client_id>")
@require_permission("clients.view")
def clients_detail(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    data = serialize_client(client, detail=True)
    data["agreements"] = agreement_rows(s, client)
    data["orders"] = [
        serialize_order(o)
        for o in s.query(Order).filter(Order.client_id == client.id).order_by(Order.date.desc()).all()
    ]
    return data


@bp.put("/clients/<int:client_id>")
@require_permission("clients.edit")
def clients_update(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    payload = json_payload()
    errors = validate_client_payload(payload)
    if errors:
        return errors_response(errors)
    update_client(s, client, payload, current_user())
    s.commit()
    return serialize_client(client, detail=True)


@bp.delete("/clients/<int:client_id>")
@require_permission("clients.edit")
def clients_delete(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    try:
        delete_client(s, client, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------

@bp.post("/clients/<int:client_id>/complaints")
@require_permission("clients.edit")
def complaints_create(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    payload = json_payload()
    errors = validate_complaint_payload(payload)
    if errors:
        return errors_response(errors)
    complaint = create_complaint(s, client, payload, current_user())
    s.commit()
    return serialize_complaint(complaint), 201


@bp.put("/clients/<int:client_id>/complaints/<int:complaint_id>")
@require_permission("clients.edit")
def complaints_update(client_id: int, complaint_id: int):
    s = db_session()
    complaint = _child_or_404(s, Complaint, complaint_id, client_id)
    payload = json_payload()
    errors = validate_complaint_payload(payload, partial=True)
    if errors:
        return errors_response(errors)
    update_complaint(s, complaint, payload, current_user())
    s.commit()
    return serialize_complaint(complaint)


@bp.delete("/clients/<int:client_id>/complaints/<int:complaint_id>")
@require_permission("clients.edit")
def complaints_delete(client_id: int, complaint_id: int):
    s = db_session()
    complaint = _child_or_404(s, Complaint, complaint_id, client_id)
    delete_complaint(s, complaint, current_user())
    s.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Agreements (monthly plans)
# ---------------------------------------------------------------------------

@bp.get("/clients/<int:client_id>/agreements")
@require_permission("clients.view")
def agreements_list(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    return {"items": agreement_rows(s, client)}


@bp.post("/clients/<int:client_id>/agreements")
@require_permission("clients.edit")
def agreements_save(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    payload = json_payload()
    try:
        plan = save_monthly_plan(s, client, payload.get("month"), payload.get("limit_kg"), current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"id": plan.id, "month": plan.month, "limit_kg": plan.limit_kg}


@bp.delete("/clients/<int:client_id>/agreements/<int:plan_id>")
@require_permission("clients.edit")
def agreements_delete(client_id: int, plan_id: int):
    s = db_session()
    plan = _child_or_404(s, MonthlyPlan, plan_id, client_id)
    delete_monthly_plan(s, plan, current_user())
    s.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Payment ledger
# ---------------------------------------------------------------------------

@bp.get("/clients/<int:client_id>/statement")
@require_permission("clients.view")
def clients_statement(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    currency = (request.args.get("currency") or "UZS").upper()
    if currency not in LEDGER_CURRENCIES:
        return errors_response([f"Currency must be one of: {', '.join(LEDGER_CURRENCIES)}."])
    statement = client_statement(s, client, currency)
    for row in statement["rows"]:
        row["date"] = iso(row["date"])
    return statement


@bp.post("/clients/<int:client_id>/transactions")
@require_permission("clients.edit")
def transactions_create(client_id: int):
    s = db_session()
    client = get_or_404(s, Client, client_id)
    payload = json_payload()
    errors = validate_client_transaction_payload(payload)
    if errors:
        return errors_response(errors)
    tx = create_client_transaction(s, client, payload, current_user())
    s.commit()
    return serialize_transaction(tx), 201


@bp.put("/clients/<int:client_id>/transactions/<int:tx_id>")
@require_permission("clients.edit")
def transactions_update(client_id: int, tx_id: int):
    s = db_session()
    tx = _child_or_404(s, ClientTransaction, tx_id, client_id)
    payload = json_payload()
    errors = validate_client_transaction_payload(payload)
    if errors:
        return errors_response(errors)
    update_client_transaction(s, tx, payload, current_user())
    s.commit()
    return serialize_transaction(tx)


@bp.delete("/clients/<int:client_id>/transactions/<int:tx_id>")
@require_permission("clients.edit")
def transactions_delete(client_id: int, tx_id: int):
    s = db_session()
    tx = _child_or_404(s, ClientTransaction, tx_id, client_id)
    delete_client_transaction(s, tx, current_user())
    s.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# CRM
# ---------------------------------------------------------------------------

@bp.get("/crm")
@require_permission("clients.view")
def crm_list():
    s = db_session()
    q = s.query(CrmLead)
    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(CrmLead.status == status)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(CrmLead.full_name.ilike(like), CrmLead.company.ilike(like), CrmLead.phone.ilike(like)))
    leads = q.order_by(CrmLead.created_at.desc(), CrmLead.id.desc()).all()
    return {"items": [serialize_lead(x) for x in leads], "total": len(leads)}


@bp.post("/crm")
@require_permission("clients.edit")
def crm_create():
    s = db_session()
    payload = json_payload()
    errors = validate_crm_lead_payload(payload)
    if errors:
        return errors_response(errors)
    lead = create_crm_lead(s, payload, current_user())
    s.commit()
    return serialize_lead(lead), 201


@bp.put("/crm/<int:lead_id>")
@require_permission("clients.edit")
def crm_update(lead_id: int):
    s = db_session()
    lead = get_or_404(s, CrmLead, lead_id)
    payload = json_payload()
    errors = validate_crm_lead_payload(payload)
    if errors:
        return errors_response(errors)
    update_crm_lead(s, lead, payload, current_user())
    s.commit()
    return serialize_lead(lead)


@bp.delete("/crm/<int:lead_id>")
@require_permission("clients.edit")
def crm_delete(lead_id: int):
    s = db_session()
    lead = get_or_404(s, CrmLead, lead_id)
    delete_crm_lead(s, lead, current_user())
    s.commit()
    return {"ok": True}


@bp.post("/crm/<int:lead_id>/convert")
@require_permission("clients.edit")
def crm_convert(lead_id: int):
    s = db_session()
    lead = get_or_404(s, CrmLead, lead_id)
    client = convert_lead_to_client(s, lead, current_user())
    s.commit()
    return serialize_client(client), 201


# ---------------------------------------------------------------------------
# Tolling
# ---------------------------------------------------------------------------

@bp.get("/tolling")
@require_permission("clients.view")
def tolling_list():
    s = db_session()
    q = s.query(TollingRecord)
    client_id = request.args.get("client_id", type=int)
    if client_id:
        q = q.filter(TollingRecord.client_id == client_id)
    records = q.order_by(TollingRecord.created_at.desc(), TollingRecord.id.desc()).all()
    return {"items": [serialize_tolling(r) for r in records], "total": len(records)}


@bp.post("/tolling")
@require_permission("clients.edit")
def tolling_create():
    s = db_session()
    payload = json_payload()
    errors = validate_tolling_payload(s, payload)
    if errors:
        return errors_response(errors)
    rec = create_tolling_record(s, payload, current_user())
    s.commit()
    return serialize_tolling(rec), 201


@bp.put("/tolling/<int:record_id>")
@require_permission("clients.edit")
def tolling_update(record_id: int):
    s = db_session()
    rec = get_or_404(s, TollingRecord, record_id)
    payload = json_payload()
    errors = validate_tolling_payload(s, payload)
    if errors:
        return errors_response(errors)
    update_tolling_record(s, rec, payload, current_user())
    s.commit()
    return serialize_tolling(rec)


@bp.delete("/tolling/<int:record_id>")
@require_permission("clients.edit")
def tolling_delete(record_id: int):
    s = db_session()
    rec = get_or_404(s, TollingRecord, record_id)
    delete_tolling_record(s, rec, current_user())
    s.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Order book
# ---------------------------------------------------------------------------

@bp.get("/orders")
@require_permission("orders.view")
def orders_list():
    s = db_session()
    q = s.query(Order)
    client_id = request.args.get("client_id", type=int)
    if client_id:
        q = q.filter(Order.client_id == client_id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Order.order_number.ilike(like), Order.title.ilike(like)))
    start = parse_date(request.args.get("start"))
    end = parse_date(request.args.get("end"))
    if start:
        q = q.filter(Order.date >= start)
    if end:
        q = q.filter(Order.date <= end)
    skip, limit = pagination_args()
    total = q.count()
    items = q.order_by(Order.date.desc(), Order.id.desc()).offset(skip).limit(limit).all()
    return {"total": total, "skip": skip, "limit": limit, "items": [serialize_order(o) for o in items]}


@bp.post("/orders")
@require_permission("orders.edit")
def orders_create():
    s = db_session()
    payload = json_payload()
    errors = validate_order_payload(s, payload)
    if errors:
        status = 409 if errors == ["Order number already exists."] else 400
        return errors_response(errors, status)
    order = create_order(s, payload, current_user())
    s.commit()
    return serialize_order(order), 201


@bp.get("/orders/<int:order_id>")
@require_permission("orders.view")
def orders_detail(order_id: int):
    s = db_session()
    return serialize_order(get_or_404(s, Order, order_id))


@bp.put("/orders/<int:order_id>")
@require_permission("orders.edit")
def orders_update(order_id: int):
    s = db_session()
    order = get_or_404(s, Order, order_id)
    payload = json_payload()
    errors = validate_order_payload(s, payload, existing=order)
    if errors:
        status = 409 if errors == ["Order number already exists."] else 400
        return errors_response(errors, status)
    update_order(s, order, payload, current_user())
    s.commit()
    return serialize_order(order)


@bp.delete("/orders/<int:order_id>")
@require_permission("orders.edit")
def orders_delete(order_id: int):
    s = db_session()
    order = get_or_404(s, Order, order_id)
    try:
        delete_order(s, order, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}
