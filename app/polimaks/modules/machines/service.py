"""
Machines (stanok) service layer.
Machine CRUD, per-machine complaints and monthly plans, brigades (crews).
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import MACHINE_TYPES
from app.polimaks.utils import clean_str, current_month, parse_float, parse_month

from .models import Brigade, BrigadeMember, Machine, MachineComplaint, MachineMonthlyPlan

if TYPE_CHECKING:
    from app.polimaks.models import User


def validate_machine_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial or "machine_type" in payload:
        if payload.get("machine_type") not in MACHINE_TYPES:
            errors.append(f"Machine type must be one of: {', '.join(MACHINE_TYPES)}.")
    if not partial or "name" in payload:
        if not (payload.get("name") or "").strip():
            errors.append("Machine name is required.")
    return errors


def resolve_machine(s: Session, machine_type: str | None, machine_id) -> Machine:
    """Look up a machine referenced by a ledger row; raises ValueError when it does not exist."""
    if machine_type not in MACHINE_TYPES:
        raise ValueError(f"Machine type must be one of: {', '.join(MACHINE_TYPES)}.")
    try:
        mid = int(machine_id)
    except (TypeError, ValueError):
        raise ValueError("Machine is required.") from None
    machine = s.get(Machine, mid)
    if machine is None or machine.machine_type != machine_type:
        raise ValueError(f"Unknown {machine_type} machine: {machine_id}")
    return machine


def create_machine(s: Session, payload: dict, user: User) -> Machine:
    now = datetime.utcnow()
    machine = Machine(
        machine_type=payload["machine_type"],
        name=(payload.get("name") or "").strip(),
        language_code=(payload.get("language_code") or "uz").strip(),
        description=clean_str(payload.get("description")),
        created_at=now,
        updated_at=now,
    )
    s.add(machine)
    s.flush()
    record_event(
        s,
        actor=user,
        action="machine.create",
        entity_type="Machine",
        entity_id=str(machine.id),
        metadata={"machine_type": machine.machine_type, "name": machine.name},
    )
    return machine


def update_machine(s: Session, machine: Machine, payload: dict, user: User) -> Machine:
    changes = {}
    for attr in ("name", "language_code", "description"):
        if attr not in payload:
            continue
        val = clean_str(payload.get(attr))
        if attr == "name" and not val:
            continue
        if val != getattr(machine, attr):
            changes[attr] = {"old": getattr(machine, attr), "new": val}
            setattr(machine, attr, val)
    machine.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="machine.edit",
            entity_type="Machine",
            entity_id=str(machine.id),
            metadata={"changes": changes},
        )
    return machine


def delete_machine(s: Session, machine: Machine, user: User) -> None:
    from app.polimaks.modules.production.models import ProductionPlan

    if s.query(ProductionPlan).filter(ProductionPlan.machine_id == machine.id).first():
        raise ValueError("Machine has production plans and cannot be deleted.")
    record_event(
        s,
        actor=user,
        action="machine.delete",
        entity_type="Machine",
        entity_id=str(machine.id),
        metadata={"machine_type": machine.machine_type, "name": machine.name},
    )
    s.delete(machine)


# ---------------------------------------------------------------------------
# Complaints
# ---------------------------------------------------------------------------

def add_machine_complaint(s: Session, machine: Machine, message: str, user: User) -> MachineComplaint:
    message = (message or "").strip()
    if not message:
        raise ValueError("Complaint message is required.")
    complaint = MachineComplaint(machine_id=machine.id, message=message, status="open", created_at=datetime.utcnow())
    s.add(complaint)
    s.flush()
    record_event(
        s,
        actor=user,
        action="machine.complaint.create",
        entity_type="MachineComplaint",
        entity_id=str(complaint.id),
        metadata={"machine_id": machine.id},
    )
    return complaint


def set_machine_complaint_status(s: Session, complaint: MachineComplaint, status: str, user: User) -> MachineComplaint:
    if status not in ("open", "resolved"):
        raise ValueError("Status must be 'open' or 'resolved'.")
    old = complaint.status
    complaint.status = status
    complaint.resolved_at = datetime.utcnow() if status == "resolved" else None
    record_event(
        s,
        actor=user,
        action="machine.complaint.status",
        entity_type="MachineComplaint",
        entity_id=str(complaint.id),
        metadata={"from": old, "to": status},
    )
    return complaint


def delete_machine_complaint(s: Session, complaint: MachineComplaint, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="machine.complaint.delete",
        entity_type="MachineComplaint",
        entity_id=str(complaint.id),
        metadata={"machine_id": complaint.machine_id},
    )
    s.delete(complaint)


# ---------------------------------------------------------------------------
# Monthly plans
# ---------------------------------------------------------------------------

def save_machine_monthly_plan(s: Session, machine: Machine, month, limit_kg, user: User) -> MachineMonthlyPlan:
    """Insert or replace the plan for a month (one plan per machine per month)."""
    m = parse_month(month)
    limit = parse_float(limit_kg)
    if not m:
        raise ValueError("Month must be in YYYY-MM format.")
    if limit is None or limit <= 0:
        raise ValueError("Limit must be a positive number.")

    plan = (
        s.query(MachineMonthlyPlan)
        .filter(MachineMonthlyPlan.machine_id == machine.id, MachineMonthlyPlan.month == m)
        .one_or_none()
    )
    if plan is None:
        plan = MachineMonthlyPlan(machine_id=machine.id, month=m, limit_kg=limit)
        s.add(plan)
    else:
        plan.limit_kg = limit
    s.flush()
    record_event(
        s,
        actor=user,
        action="machine.monthly_plan.save",
        entity_type="MachineMonthlyPlan",
        entity_id=str(plan.id),
        metadata={"machine_id": machine.id, "month": m, "limit_kg": limit},
    )
    return plan


def delete_machine_monthly_plan(s: Session, plan: MachineMonthlyPlan, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="machine.monthly_plan.delete",
        entity_type="MachineMonthlyPlan",
        entity_id=str(plan.id),
        metadata={"machine_id": plan.machine_id, "month": plan.month},
    )
    s.delete(plan)


def machine_overview(s: Session, machine: Machine, month: str | None = None) -> dict:
    """Plan counts by status and produced kg for the month against the monthly limit."""
    from app.polimaks.modules.production.models import ProductionPlan

    month = month or current_month()
    plans = s.query(ProductionPlan).filter(ProductionPlan.machine_id == machine.id).all()
    by_status: dict[str, int] = {}
    produced = 0.0
    for plan in plans:
        by_status[plan.status] = by_status.get(plan.status, 0) + 1
        if plan.status == "finished" and plan.end_date and plan.end_date.strftime("%Y-%m") == month:
            produced += plan.order.quantity_kg if plan.order else 0.0
    limit = next((p.limit_kg for p in machine.monthly_plans if p.month == month), None)
    return {
        "month": month,
        "plans_by_status": by_status,
        "produced_kg": round(produced, 3),
        "limit_kg": limit,
        "open_complaints": sum(1 for c in machine.complaints if c.status == "open"),
    }


# ---------------------------------------------------------------------------
# Brigades
# ---------------------------------------------------------------------------

def _load_worker(s: Session, worker_id):
    from app.polimaks.modules.staff.models import StaffMember

    try:
        wid = int(worker_id)
    except (TypeError, ValueError):
        return None
    worker = s.get(StaffMember, wid)
    if worker is None or worker.role != "worker":
        return None
    return worker


def validate_brigade_payload(s: Session, payload: dict) -> list[str]:
    errors = []
    if payload.get("machine_type") not in MACHINE_TYPES:
        errors.append(f"Machine type must be one of: {', '.join(MACHINE_TYPES)}.")
    if not (payload.get("name") or "").strip():
        errors.append("Brigade name is required.")
    leader = payload.get("leader_worker_id")
    if leader not in (None, "") and _load_worker(s, leader) is None:
        errors.append("Leader must be an existing worker.")
    seen: set[int] = set()
    for person in payload.get("members") or []:
        worker = _load_worker(s, (person or {}).get("worker_id"))
        if worker is None:
            errors.append(f"Unknown worker: {(person or {}).get('worker_id')}")
            continue
        if worker.id in seen:
            errors.append(f"Worker {worker.name} is listed twice.")
        seen.add(worker.id)
    return errors


def _apply_members(s: Session, brigade: Brigade, members: list[dict]) -> None:
    brigade.members.clear()
    s.flush()
    for person in members:
        brigade.members.append(
            BrigadeMember(worker_id=int(person["worker_id"]), position=clean_str(person.get("position")))
        )


def create_brigade(s: Session, payload: dict, user: User) -> Brigade:
    leader = payload.get("leader_worker_id")
    brigade = Brigade(
        machine_type=payload["machine_type"],
        name=payload["name"].strip(),
        leader_worker_id=int(leader) if leader not in (None, "") else None,
    )
    s.add(brigade)
    s.flush()
    _apply_members(s, brigade, payload.get("members") or [])
    s.flush()
    record_event(
        s,
        actor=user,
        action="brigade.create",
        entity_type="Brigade",
        entity_id=str(brigade.id),
        metadata={"name": brigade.name, "members": len(brigade.members)},
    )
    return brigade


def update_brigade(s: Session, brigade: Brigade, payload: dict, user: User) -> Brigade:
    leader = payload.get("leader_worker_id")
    brigade.machine_type = payload["machine_type"]
    brigade.name = payload["name"].strip()
    brigade.leader_worker_id = int(leader) if leader not in (None, "") else None
    _apply_members(s, brigade, payload.get("members") or [])
    s.flush()
    record_event(
        s,
        actor=user,
        action="brigade.edit",
        entity_type="Brigade",
        entity_id=str(brigade.id),
        metadata={"name": brigade.name, "members": len(brigade.members)},
    )
    return brigade


def delete_brigade(s: Session, brigade: Brigade, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="brigade.delete",
        entity_type="Brigade",
        entity_id=str(brigade.id),
        metadata={"name": brigade.name},
    )
    s.delete(brigade)
