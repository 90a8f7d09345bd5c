from __future__ import annotations

from flask import Blueprint, abort, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.constants import MACHINE_TYPES
from app.polimaks.db import db_session
from app.polimaks.modules.machines.models import Brigade, Machine, MachineComplaint, MachineMonthlyPlan
from app.polimaks.modules.machines.service import (
    add_machine_complaint,
    create_brigade,
    create_machine,
    delete_brigade,
    delete_machine,
    delete_machine_complaint,
    delete_machine_monthly_plan,
    machine_overview,
    save_machine_monthly_plan,
    set_machine_complaint_status,
    update_brigade,
    update_machine,
    validate_brigade_payload,
    validate_machine_payload,
)
from app.polimaks.rbac import require_permission

bp = Blueprint("machines", __name__)


def serialize_machine(m: Machine, *, detail: bool = False) -> dict:
    data = {
        "id": m.id,
        "machine_type": m.machine_type,
        "name": m.name,
        "language_code": m.language_code,
        "description": m.description or "",
    }
    if detail:
        data["complaints"] = [
            {
                "id": c.id,
                "message": c.message,
                "status": c.status,
                "created_at": iso(c.created_at),
                "resolved_at": iso(c.resolved_at),
            }
            for c in m.complaints
        ]
        data["monthly_plans"] = [{"id": p.id, "month": p.month, "limit_kg": p.limit_kg} for p in m.monthly_plans]
    return data


def serialize_brigade(b: Brigade) -> dict:
    return {
        "id": b.id,
        "machine_type": b.machine_type,
        "name": b.name,
        "leader_worker_id": b.leader_worker_id,
        "leader_name": b.leader.name if b.leader else None,
        "members": [
            {"id": p.id, "worker_id": p.worker_id, "worker_name": p.worker.name if p.worker else None, "position": p.position or ""}
            for p in b.members
        ],
    }


def _machine_or_404(s, machine_type: str, machine_id: int) -> Machine:
    machine = get_or_404(s, Machine, machine_id)
    if machine.machine_type != machine_type:
        abort(404)
    return machine


def _check_type(machine_type: str) -> None:
    if machine_type not in MACHINE_TYPES:
        abort(404)


@bp.get("/machines/<machine_type>")
@require_permission("machines.view")
def machines_list(machine_type: str):
    _check_type(machine_type)
    s = db_session()
    machines = s.query(Machine).filter(Machine.machine_type == machine_type).order_by(Machine.name.asc()).all()
    return {"items": [serialize_machine(m) for m in machines], "total": len(machines)}


@bp.post("/machines/<machine_type>")
@require_permission("machines.edit")
def machines_create(machine_type: str):
    _check_type(machine_type)
    s = db_session()
    payload = {**json_payload(), "machine_type": machine_type}
    errors = validate_machine_payload(payload)
    if errors:
        return errors_response(errors)
    exists = s.query(Machine).filter(Machine.machine_type == machine_type, Machine.name == payload["name"].strip()).first()
    if exists:
        return errors_response(["Machine with this name already exists."], 409)
    machine = create_machine(s, payload, current_user())
    s.commit()
    return serialize_machine(machine, detail=True), 201


@bp.get("/machines/<machine_type>/<int:machine_id>")
@require_permission("machines.view")
def machines_detail(machine_type: str, machine_id: int):
    s = db_session()
    machine = _machine_or_404(s, machine_type, machine_id)
    data = serialize_machine(machine, detail=True)
    data["overview"] = machine_overview(s, machine, request.args.get("month"))
    return data


@bp.put("/machines/<machine_type>/<int:machine_id>")
@require_permission("machines.edit")
def machines_update(machine_type: str, machine_id: int):
    s = db_session()
    machine = _machine_or_404(s, machine_type, machine_id)
    payload = json_payload()
    payload.pop("machine_type", None)
    errors = validate_machine_payload(payload, partial=True)
    if errors:
        return errors_response(errors)
    update_machine(s, machine, payload, current_user())
    s.commit()
    return serialize_machine(machine, detail=True)


@bp.delete("/machines/<machine_type>/<int:machine_id>")
@require_permission("machines.edit")
def machines_delete(machine_type: str, machine_id: int):
    s = db_session()
    machine = _machine_or_404(s, machine_type, machine_id)
    try:
        delete_machine(s, machine, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}


@bp.post("/machines/<machine_type>/<int:machine_id>/complaints")
@require_permission("machines.edit")
def machines_complaint_add(machine_type: str, machine_id: int):
    s = db_session()
    machine = _machine_or_404(s, machine_type, machine_id)
    try:
        complaint = add_machine_complaint(s, machine, json_payload().get("message") or "", current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"id": complaint.id, "status": complaint.status}, 201


@bp.post("/machines/<machine_type>/<int:machine_id>/complaints/<int:complaint_id>/status")
@require_permission("machines.edit")
def machines_complaint_status(machine_type: str, machine_id: int, complaint_id: int):
    s = db_session()
    _machine_or_404(s, machine_type, machine_id)
    complaint = get_or_404(s, MachineComplaint, complaint_id)
    if complaint.machine_id != machine_id:
        abort(404)
    try:
        set_machine_complaint_status(s, complaint, json_payload().get("status") or "", current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"id": complaint.id, "status": complaint.status, "resolved_at": iso(complaint.resolved_at)}


@bp.delete("/machines/<machine_type>/<int:machine_id>/complaints/<int:complaint_id>")
@require_permission("machines.edit")
def machines_complaint_delete(machine_type: str, machine_id: int, complaint_id: int):
    s = db_session()
    _machine_or_404(s, machine_type, machine_id)
    complaint = get_or_404(s, MachineComplaint, complaint_id)
    if complaint.machine_id != machine_id:
        abort(404)
    delete_machine_complaint(s, complaint, current_user())
    s.commit()
    return {"ok": True}


@bp.post("/machines/<machine_type>/<int:machine_id>/monthly-plans")
@require_permission("machines.edit")
def machines_plan_save(machine_type: str, machine_id: int):
    s = db_session()
    machine = _machine_or_404(s, machine_type, machine_id)
    payload = json_payload()
    try:
        plan = save_machine_monthly_plan(s, machine, payload.get("month"), payload.get("limit_kg"), current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"id": plan.id, "month": plan.month, "limit_kg": plan.limit_kg}


@bp.delete("/machines/<machine_type>/<int:machine_id>/monthly-plans/<int:plan_id>")
@require_permission("machines.edit")
def machines_plan_delete(machine_type: str, machine_id: int, plan_id: int):
    s = db_session()
    _machine_or_404(s, machine_type, machine_id)
    plan = get_or_404(s, MachineMonthlyPlan, plan_id)
    if plan.machine_id != machine_id:
        abort(404)
    delete_machine_monthly_plan(s, plan, current_user())
    s.commit()
    return {"ok": True}


@bp.get("/brigades")
@require_permission("machines.view")
def brigades_list():
    s = db_session()
    q = s.query(Brigade)
    machine_type = (request.args.get("machine_type") or "").strip()
    if machine_type:
        q = q.filter(Brigade.machine_type == machine_type)
    brigades = q.order_by(Brigade.name.asc()).all()
    return {"items": [serialize_brigade(b) for b in brigades], "total": len(brigades)}


@bp.post("/brigades")
@require_permission("machines.edit")
def brigades_create():
    s = db_session()
    payload = json_payload()
    errors = validate_brigade_payload(s, payload)
    if errors:
        return errors_response(errors)
    brigade = create_brigade(s, payload, current_user())
    s.commit()
    return serialize_brigade(brigade), 201


@bp.get("/brigades/<int:brigade_id>")
@require_permission("machines.view")
def brigades_detail(brigade_id: int):
    s = db_session()
    return serialize_brigade(get_or_404(s, Brigade, brigade_id))


@bp.put("/brigades/<int:brigade_id>")
@require_permission("machines.edit")
def brigades_update(brigade_id: int):
    s = db_session()
    brigade = get_or_404(s, Brigade, brigade_id)
    payload = json_payload()
    errors = validate_brigade_payload(s, payload)
    if errors:
        return errors_response(errors)
    update_brigade(s, brigade, payload, current_user())
    s.commit()
    return serialize_brigade(brigade)


@bp.delete("/brigades/<int:brigade_id>")
@require_permission("machines.edit")
def brigades_delete(brigade_id: int):
    s = db_session()
    brigade = get_or_404(s, Brigade, brigade_id)
    delete_brigade(s, brigade, current_user())
    s.commit()
    return {"ok": True}
