from __future__ import annotations

from flask import Blueprint, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.db import db_session
from app.polimaks.modules.partners.models import Partner
from app.polimaks.modules.partners.service import (
    all_categories,
    create_partner,
    delete_partner,
    search_partners,
    update_partner,
    validate_partner_payload,
)
from app.polimaks.rbac import require_permission
from app.polimaks.utils import format_phone

bp = Blueprint("partners", __name__)


def serialize_partner(p: Partner) -> dict:
    return {
        "id": p.id,
        "full_name": p.full_name,
        "phone": p.phone,
        "phone_display": format_phone(p.phone),
        "company": p.company or "",
        "notes": p.notes or "",
        "categories": list(p.categories or []),
        "created_at": iso(p.created_at),
    }


@bp.get("/partners")
@require_permission("partners.view")
def partners_list():
    s = db_session()
    partners = search_partners(s, request.args.get("q"), request.args.get("category"))
    return {"items": [serialize_partner(p) for p in partners], "total": len(partners), "categories": all_categories(s)}


@bp.post("/partners")
@require_permission("partners.edit")
def partners_create():
    s = db_session()
    payload = json_payload()
    errors = validate_partner_payload(payload)
    if errors:
        return errors_response(errors)
    partner = create_partner(s, payload, current_user())
    s.commit()
    return serialize_partner(partner), 201


@bp.get("/partners/<int:partner_id>")
@require_permission("partners.view")
def partners_detail(partner_id: int):
    s = db_session()
    return serialize_partner(get_or_404(s, Partner, partner_id))


@bp.put("/partners/<int:partner_id>")
@require_permission("partners.edit")
def partners_update(partner_id: int):
    s = db_session()
    partner = get_or_404(s, Partner, partner_id)
    payload = json_payload()
    errors = validate_partner_payload(payload)
    if errors:
        return errors_response(errors)
    update_partner(s, partner, payload, current_user())
    s.commit()
    return serialize_partner(partner)


@bp.delete("/partners/<int:partner_id>")
@require_permission("partners.edit")
def partners_delete(partner_id: int):
    s = db_session()
    partner = get_or_404(s, Partner, partner_id)
    delete_partner(s, partner, current_user())
    s.commit()
    return {"ok": True}
