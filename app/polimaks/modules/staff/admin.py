from __future__ import annotations

from flask import Blueprint, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.constants import STAFF_ROLES
from app.polimaks.db import db_session
from app.polimaks.modules.staff.models import StaffMember
from app.polimaks.modules.staff.service import (
    create_staff_member,
    delete_staff_member,
    update_staff_member,
    validate_staff_payload,
)
from app.polimaks.rbac import require_permission
from app.polimaks.utils import format_phone

bp = Blueprint("staff", __name__)


def serialize_staff(m: StaffMember) -> dict:
    return {
        "id": m.id,
        "role": m.role,
        "name": m.name,
        "phone": m.phone,
        "phone_display": format_phone(m.phone),
        "description": m.description or "",
        "created_at": iso(m.created_at),
    }


@bp.get("/staff")
@require_permission("staff.view")
def staff_list():
    s = db_session()
    role = (request.args.get("role") or "").strip()
    search = (request.args.get("q") or "").strip()
    q = s.query(StaffMember)
    if role:
        if role not in STAFF_ROLES:
            return errors_response([f"Unknown role: {role}"])
        q = q.filter(StaffMember.role == role)
    if search:
        like = f"%{search}%"
        q = q.filter((StaffMember.name.ilike(like)) | (StaffMember.phone.ilike(like)))
    members = q.order_by(StaffMember.name.asc()).all()
    return {"items": [serialize_staff(m) for m in members], "total": len(members)}


@bp.post("/staff")
@require_permission("staff.edit")
def staff_create():
    s = db_session()
    payload = json_payload()
    errors = validate_staff_payload(payload)
    if errors:
        return errors_response(errors)
    member = create_staff_member(s, payload, current_user())
    s.commit()
    return serialize_staff(member), 201


@bp.get("/staff/<int:member_id>")
@require_permission("staff.view")
def staff_detail(member_id: int):
    s = db_session()
    return serialize_staff(get_or_404(s, StaffMember, member_id))


@bp.put("/staff/<int:member_id>")
@require_permission("staff.edit")
def staff_update(member_id: int):
    s = db_session()
    member = get_or_404(s, StaffMember, member_id)
    payload = json_payload()
    errors = validate_staff_payload(payload, partial=True)
    if errors:
        return errors_response(errors)
    update_staff_member(s, member, payload, current_user())
    s.commit()
    return serialize_staff(member)


@bp.delete("/staff/<int:member_id>")
@require_permission("staff.edit")
def staff_delete(member_id: int):
    s = db_session()
    member = get_or_404(s, StaffMember, member_id)
    try:
        delete_staff_member(s, member, current_user())
    except ValueError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return {"ok": True}
