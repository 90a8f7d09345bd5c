from __future__ import annotations

from flask import Blueprint, abort, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.constants import MACHINE_TYPES
from app.polimaks.db import db_session
from app.polimaks.modules.clients.models import Order
from app.polimaks.modules.inventory.service import InsufficientStockError
from app.polimaks.modules.production.models import MaterialUsage, ProductionPlan
from app.polimaks.modules.production.service import (
    create_plan,
    delete_material_usage,
    delete_plan,
    machine_schedule,
    order_cost_report,
    record_material_usage,
    set_plan_status,
    update_plan,
    validate_plan_payload,
)
from app.polimaks.rbac import require_permission

bp = Blueprint("production", __name__)


def serialize_usage(u: MaterialUsage) -> dict:
    return {
        "id": u.id,
        "kind": u.kind,
        "item_id": u.item_id,
        "item_label": u.item_label,
        "amount": u.amount,
        "unit": u.unit,
        "unit_price": u.unit_price,
        "currency": u.currency,
        "cost": u.cost,
        "note": u.note or "",
        "created_at": iso(u.created_at),
    }


def serialize_plan(p: ProductionPlan, *, detail: bool = False) -> dict:
    data = {
        "id": p.id,
        "order_id": p.order_id,
        "order_label": p.order.label if p.order else str(p.order_id),
        "quantity_kg": p.order.quantity_kg if p.order else None,
        "machine_type": p.machine_type,
        "machine_id": p.machine_id,
        "machine_name": p.machine.name if p.machine else str(p.machine_id),
        "brigade_id": p.brigade_id,
        "brigade_name": p.brigade.name if p.brigade else None,
        "start_date": iso(p.start_date),
        "end_date": iso(p.end_date),
        "status": p.status,
        "notes": p.notes or "",
    }
    if detail:
        data["usages"] = [serialize_usage(u) for u in p.usages]
    return data


@bp.get("/production/plans")
@require_permission("production.view")
def plans_list():
    s = db_session()
    q = s.query(ProductionPlan)
    for field in ("status", "machine_type"):
        value = (request.args.get(field) or "").strip()
        if value:
            q = q.filter(getattr(ProductionPlan, field) == value)
    order_id = request.args.get("order_id", type=int)
    if order_id:
        q = q.filter(ProductionPlan.order_id == order_id)
    plans = q.order_by(ProductionPlan.created_at.desc(), ProductionPlan.id.desc()).all()
    return {"items": [serialize_plan(p) for p in plans], "total": len(plans)}


@bp.post("/production/plans")
@require_permission("production.edit")
def plans_create():
    s = db_session()
    payload = json_payload()
    errors = validate_plan_payload(s, payload)
    if errors:
        return errors_response(errors)
    plan = create_plan(s, payload, current_user())
    s.commit()
    return serialize_plan(plan, detail=True), 201


@bp.get("/production/plans/<int:plan_id>")
@require_permission("production.view")
def plans_detail(plan_id: int):
    s = db_session()
    return serialize_plan(get_or_404(s, ProductionPlan, plan_id), detail=True)


@bp.put("/production/plans/<int:plan_id>")
@require_permission("production.edit")
def plans_update(plan_id: int):
    s = db_session()
    plan = get_or_404(s, ProductionPlan, plan_id)
    payload = json_payload()
    errors = validate_plan_payload(s, payload)
    if errors:
        return errors_response(errors)
    try:
        update_plan(s, plan, payload, current_user())
    except ValueError as e:
        return errors_response([str(e)], 409)
    s.commit()
    return serialize_plan(plan, detail=True)


@bp.post("/production/plans/<int:plan_id>/status")
@require_permission("production.edit")
def plans_status(plan_id: int):
    s = db_session()
    plan = get_or_404(s, ProductionPlan, plan_id)
    try:
        set_plan_status(s, plan, json_payload().get("status") or "", current_user())
    except ValueError as e:
        return errors_response([str(e)], 409)
    s.commit()
    return serialize_plan(plan)


@bp.delete("/production/plans/<int:plan_id>")
@require_permission("production.edit")
def plans_delete(plan_id: int):
    s = db_session()
    plan = get_or_404(s, ProductionPlan, plan_id)
    try:
        delete_plan(s, plan, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}


@bp.post("/production/plans/<int:plan_id>/usages")
@require_permission("production.edit")
def usages_create(plan_id: int):
    s = db_session()
    plan = get_or_404(s, ProductionPlan, plan_id)
    payload = json_payload()
    try:
        usage = record_material_usage(
            s,
            plan,
            payload.get("kind") or "",
            payload.get("item_id"),
            payload.get("amount"),
            current_user(),
            note=payload.get("note"),
        )
    except InsufficientStockError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)])
    s.commit()
    return serialize_usage(usage), 201


@bp.delete("/production/plans/<int:plan_id>/usages/<int:usage_id>")
@require_permission("production.edit")
def usages_delete(plan_id: int, usage_id: int):
    s = db_session()
    usage = get_or_404(s, MaterialUsage, usage_id)
    if usage.plan_id != plan_id:
        abort(404)
    try:
        delete_material_usage(s, usage, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}


@bp.get("/production/orders/<int:order_id>/costs")
@require_permission("production.view")
def order_costs(order_id: int):
    s = db_session()
    return order_cost_report(s, get_or_404(s, Order, order_id))


@bp.get("/production/schedule/<machine_type>/<int:machine_id>")
@require_permission("production.view")
def schedule(machine_type: str, machine_id: int):
    if machine_type not in MACHINE_TYPES:
        abort(404)
    s = db_session()
    include_closed = request.args.get("open_only") not in ("1", "true")
    plans = machine_schedule(s, machine_type, machine_id, include_closed=include_closed)
    return {"items": [serialize_plan(p) for p in plans], "total": len(plans)}
