import json
import os
from datetime import date, datetime, time, timedelta

from flask import Blueprint, g, request
from sqlalchemy import func, text

from app.polimaks.api import errors_response, iso
from app.polimaks.db import db_session
from app.polimaks.models import AuditEvent, User
from app.polimaks.rbac import require_permission, user_permission_keys
from app.polimaks.utils import parse_date

bp = Blueprint("admin", __name__)

AUDIT_LIMIT = 200


def _month_bounds(today: date) -> tuple[date, date]:
    start = today.replace(day=1)
    nxt = (start + timedelta(days=32)).replace(day=1)
    return start, nxt - timedelta(days=1)


def overview_counts(s, today: date | None = None) -> dict:
    from app.polimaks.modules.clients.models import Client, Complaint, Order
    from app.polimaks.modules.inventory.service import KINDS
    from app.polimaks.modules.production.models import ProductionPlan

    start, end = _month_bounds(today or date.today())
    return {
        "clients": s.query(func.count(Client.id)).scalar() or 0,
        "open_complaints": s.query(func.count(Complaint.id)).filter(Complaint.status != "resolved").scalar() or 0,
        "orders_this_month": s.query(func.count(Order.id)).filter(Order.date >= start, Order.date <= end).scalar() or 0,
        "inventory": {kind: s.query(func.count(model.id)).scalar() or 0 for kind, model in KINDS.items()},
        "plans_in_progress": s.query(func.count(ProductionPlan.id)).filter(ProductionPlan.status == "in_progress").scalar()
        or 0,
    }


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    status = {
        "env": (os.environ.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": (os.environ.get("STORAGE_BACKEND") or "local").strip().lower() or "local",
    }
    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        s.rollback()
        status["db_error"] = str(e)
        return {"system_status": status}, 503
    return {"system_status": status, "counts": overview_counts(s)}


@bp.get("/me")
@require_permission("admin.view")
def me():
    user: User = g.current_user
    return {
        "id": user.id,
        "phone_number": user.phone_number,
        "roles": sorted({r.key for r in (user.roles or [])}),
        "permissions": user_permission_keys(user),
    }


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Last 200 audit events with simple filters:
    - action (contains)
    - entity_type, entity_id (exact)
    - actor (phone contains)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    actor = (request.args.get("actor") or "").strip()
    raw_from = (request.args.get("date_from") or "").strip()
    raw_to = (request.args.get("date_to") or "").strip()
    date_from = parse_date(raw_from)
    date_to = parse_date(raw_to)

    errors = []
    if raw_from and not date_from:
        errors.append("date_from must be YYYY-MM-DD")
    if raw_to and not date_to:
        errors.append("date_to must be YYYY-MM-DD")
    if errors:
        return errors_response(errors)

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if actor:
        q = q.filter(AuditEvent.actor_phone.like(f"%{actor}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_LIMIT).all()
    return {
        "items": [
            {
                "id": e.id,
                "created_at": iso(e.created_at),
                "request_id": e.request_id,
                "actor_user_id": e.actor_user_id,
                "actor_phone": e.actor_phone,
                "action": e.action,
                "entity_type": e.entity_type,
                "entity_id": e.entity_id,
                "reason": e.reason,
                "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
                "client_ip": e.client_ip,
            }
            for e in events
        ],
        "total": len(events),
    }
