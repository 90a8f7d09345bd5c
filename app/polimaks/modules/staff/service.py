from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.polimaks.audit import record_event
from app.polimaks.constants import STAFF_ROLES
from app.polimaks.utils import clean_str, raw_phone, validate_phone

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.polimaks.models import User
    from app.polimaks.modules.staff.models import StaffMember


def validate_staff_payload(payload: dict, *, partial: bool = False) -> list[str]:
    errors = []
    if not partial or "name" in payload:
        if not (payload.get("name") or "").strip():
            errors.append("Name is required.")
    if not partial or "phone" in payload:
        err = validate_phone(payload.get("phone"))
        if err:
            errors.append(err)
    if "role" in payload and payload.get("role") not in STAFF_ROLES:
        errors.append(f"Role must be one of: {', '.join(STAFF_ROLES)}.")
    return errors


def create_staff_member(s: "Session", payload: dict, user: "User") -> "StaffMember":
    from app.polimaks.modules.staff.models import StaffMember

    now = datetime.utcnow()
    member = StaffMember(
        role=payload.get("role") or "worker",
        name=(payload.get("name") or "").strip(),
        phone=raw_phone(payload.get("phone")),
        description=clean_str(payload.get("description")),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(member)
    s.flush()

    record_event(
        s,
        actor=user,
        action="staff.create",
        entity_type="StaffMember",
        entity_id=str(member.id),
        metadata={"role": member.role, "name": member.name},
    )
    return member


def update_staff_member(s: "Session", member: "StaffMember", payload: dict, user: "User") -> "StaffMember":
    changes = {}

    def _set(attr: str, val):
        if val != getattr(member, attr):
            changes[attr] = {"old": getattr(member, attr), "new": val}
            setattr(member, attr, val)

    if "name" in payload:
        _set("name", (payload.get("name") or "").strip())
    if "phone" in payload:
        _set("phone", raw_phone(payload.get("phone")))
    if "description" in payload:
        _set("description", clean_str(payload.get("description")))
    if "role" in payload:
        _set("role", payload["role"])

    member.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="staff.edit",
            entity_type="StaffMember",
            entity_id=str(member.id),
            metadata={"changes": changes},
        )
    return member


def delete_staff_member(s: "Session", member: "StaffMember", user: "User") -> None:
    from app.polimaks.modules.machines.models import Brigade, BrigadeMember

    in_brigade = (
        s.query(BrigadeMember).filter(BrigadeMember.worker_id == member.id).first()
        or s.query(Brigade).filter(Brigade.leader_worker_id == member.id).first()
    )
    if in_brigade:
        raise ValueError("Worker is assigned to a brigade; remove them from the brigade first.")

    record_event(
        s,
        actor=user,
        action="staff.delete",
        entity_type="StaffMember",
        entity_id=str(member.id),
        metadata={"role": member.role, "name": member.name},
    )
    s.delete(member)
