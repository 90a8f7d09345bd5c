"""
Production planning: order -> machine plans, status flow and material usage.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.modules.inventory.models import StockTransaction
from app.polimaks.modules.inventory.service import KINDS, book_movement, get_item, recompute_quantity
from app.polimaks.utils import clean_str, parse_date, parse_float, parse_int, validate_date_range

from .models import MaterialUsage, ProductionPlan

if TYPE_CHECKING:
    from app.polimaks.models import User

PLAN_STATUSES = ("planning", "in_progress", "finished", "cancelled")

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "planning": ("in_progress", "cancelled"),
    "in_progress": ("finished", "cancelled"),
    "finished": (),
    "cancelled": (),
}

# Material can only be issued while the plan is open.
USAGE_OPEN_STATUSES = ("planning", "in_progress")


def validate_plan_payload(s: Session, payload: dict) -> list[str]:
    from app.polimaks.modules.clients.models import Order
    from app.polimaks.modules.machines.models import Brigade
    from app.polimaks.modules.machines.service import resolve_machine

    errors = []
    if s.get(Order, parse_int(payload.get("order_id")) or 0) is None:
        errors.append("Order is required.")
    try:
        resolve_machine(s, payload.get("machine_type"), payload.get("machine_id"))
    except ValueError as e:
        errors.append(str(e))
    brigade_id = parse_int(payload.get("brigade_id"))
    if brigade_id is not None:
        brigade = s.get(Brigade, brigade_id)
        if brigade is None:
            errors.append(f"Unknown brigade: {payload.get('brigade_id')}")
        elif brigade.machine_type != payload.get("machine_type"):
            errors.append("Brigade belongs to a different machine type.")
    for field in ("start_date", "end_date"):
        if payload.get(field) not in (None, "") and parse_date(payload.get(field)) is None:
            errors.append(f"{field.replace('_', ' ').capitalize()} is invalid.")
    err = validate_date_range(parse_date(payload.get("start_date")), parse_date(payload.get("end_date")))
    if err:
        errors.append(err)
    return errors


def _plan_values(payload: dict) -> dict:
    return {
        "order_id": parse_int(payload.get("order_id")),
        "machine_type": payload["machine_type"],
        "machine_id": parse_int(payload.get("machine_id")),
        "brigade_id": parse_int(payload.get("brigade_id")),
        "start_date": parse_date(payload.get("start_date")),
        "end_date": parse_date(payload.get("end_date")),
        "notes": clean_str(payload.get("notes")),
    }


def create_plan(s: Session, payload: dict, user: User) -> ProductionPlan:
    now = datetime.utcnow()
    plan = ProductionPlan(**_plan_values(payload), status="planning", created_at=now, updated_at=now, created_by_user_id=user.id)
    s.add(plan)
    s.flush()
    record_event(
        s,
        actor=user,
        action="production.plan.create",
        entity_type="ProductionPlan",
        entity_id=str(plan.id),
        metadata={"order_id": plan.order_id, "machine_id": plan.machine_id},
    )
    return plan


def update_plan(s: Session, plan: ProductionPlan, payload: dict, user: User) -> ProductionPlan:
    if plan.status in ("finished", "cancelled"):
        raise ValueError(f"A {plan.status} plan cannot be edited.")
    changes = {}
    for attr, val in _plan_values(payload).items():
        old = getattr(plan, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(plan, attr, val)
    plan.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="production.plan.edit",
            entity_type="ProductionPlan",
            entity_id=str(plan.id),
            metadata={"changes": changes},
        )
    return plan


def set_plan_status(s: Session, plan: ProductionPlan, status: str, user: User, *, today: date | None = None) -> ProductionPlan:
    """
    planning -> in_progress | cancelled, in_progress -> finished | cancelled.
    Starting stamps a missing start date; finishing stamps a missing end date.
    """
    if status not in PLAN_STATUSES:
        raise ValueError(f"Status must be one of: {', '.join(PLAN_STATUSES)}.")
    if status not in ALLOWED_TRANSITIONS[plan.status]:
        raise ValueError(f"Cannot move a plan from {plan.status} to {status}.")
    today = today or date.today()
    old = plan.status
    plan.status = status
    if status == "in_progress" and plan.start_date is None:
        plan.start_date = today
    if status == "finished" and plan.end_date is None:
        plan.end_date = max(today, plan.start_date) if plan.start_date else today
    plan.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="production.plan.status",
        entity_type="ProductionPlan",
        entity_id=str(plan.id),
        metadata={"from": old, "to": status},
    )
    return plan


def _release_usage(s: Session, usage: MaterialUsage) -> None:
    if usage.stock_transaction_id:
        tx = s.get(StockTransaction, usage.stock_transaction_id)
        if tx is not None:
            s.delete(tx)
            s.flush()
    item = get_item(s, usage.kind, usage.item_id)
    if item is not None:
        recompute_quantity(s, item)


def delete_plan(s: Session, plan: ProductionPlan, user: User) -> None:
    """Removes the plan; material it consumed goes back to stock."""
    if plan.status == "finished":
        raise ValueError("A finished plan cannot be deleted.")
    for usage in list(plan.usages):
        _release_usage(s, usage)
    record_event(
        s,
        actor=user,
        action="production.plan.delete",
        entity_type="ProductionPlan",
        entity_id=str(plan.id),
        metadata={"order_id": plan.order_id, "machine_id": plan.machine_id, "usages_released": len(plan.usages)},
    )
    s.delete(plan)


# ---------------------------------------------------------------------------
# Material usage
# ---------------------------------------------------------------------------

def record_material_usage(s: Session, plan: ProductionPlan, kind: str, item_id, amount, user: User, *, note: str | None = None) -> MaterialUsage:
    """
    Issue material to a plan: a strict `out` on the item's ledger tied to the
    plan, its order and machine, with the unit price captured for costing.
    Raises InsufficientStockError when the stock does not cover `amount`.
    """
    if plan.status not in USAGE_OPEN_STATUSES:
        raise ValueError(f"Material cannot be issued to a {plan.status} plan.")
    if kind not in KINDS:
        raise ValueError(f"Unknown inventory kind: {kind}")
    item = get_item(s, kind, parse_int(item_id) or 0)
    if item is None:
        raise ValueError(f"Unknown {kind}: {item_id}")
    qty = parse_float(amount)
    if qty is None or qty <= 0:
        raise ValueError("Amount must be a positive number.")

    tx = book_movement(
        s,
        item,
        "out",
        qty,
        user,
        on_date=date.today(),
        strict=True,
        machine_type=plan.machine_type,
        machine_id=plan.machine_id,
        order_id=plan.order_id,
        plan_id=plan.id,
        unit_price=item.unit_price,
        currency=item.price_currency,
        note=note or f"Plan #{plan.id}",
    )
    s.flush()
    usage = MaterialUsage(
        plan_id=plan.id,
        stock_transaction_id=tx.id,
        kind=kind,
        item_id=item.id,
        item_label=item.label[:255],
        amount=tx.amount,
        unit=item.UNIT,
        unit_price=item.unit_price,
        currency=item.price_currency,
        note=clean_str(note),
        created_at=datetime.utcnow(),
    )
    plan.usages.append(usage)
    s.flush()
    record_event(
        s,
        actor=user,
        action="production.usage.create",
        entity_type="MaterialUsage",
        entity_id=str(usage.id),
        metadata={"plan_id": plan.id, "kind": kind, "item_id": item.id, "amount": usage.amount, "balance": item.quantity},
    )
    return usage


def delete_material_usage(s: Session, usage: MaterialUsage, user: User) -> None:
    if usage.plan.status not in USAGE_OPEN_STATUSES:
        raise ValueError(f"Usage of a {usage.plan.status} plan cannot be changed.")
    _release_usage(s, usage)
    record_event(
        s,
        actor=user,
        action="production.usage.delete",
        entity_type="MaterialUsage",
        entity_id=str(usage.id),
        metadata={"plan_id": usage.plan_id, "kind": usage.kind, "item_id": usage.item_id, "amount": usage.amount},
    )
    usage.plan.usages.remove(usage)


def order_cost_report(s: Session, order) -> dict:
    """Every material issued to the order's plans, with cost totals per currency."""
    plans = (
        s.query(ProductionPlan)
        .filter(ProductionPlan.order_id == order.id)
        .order_by(ProductionPlan.id.asc())
        .all()
    )
    rows = []
    totals: dict[str, float] = {}
    for plan in plans:
        for usage in plan.usages:
            rows.append(
                {
                    "plan_id": plan.id,
                    "machine_type": plan.machine_type,
                    "kind": usage.kind,
                    "item_id": usage.item_id,
                    "item_label": usage.item_label,
                    "amount": usage.amount,
                    "unit": usage.unit,
                    "unit_price": usage.unit_price,
                    "currency": usage.currency,
                    "cost": usage.cost,
                }
            )
            totals[usage.currency] = round(totals.get(usage.currency, 0.0) + usage.cost, 2)
    return {"order_id": order.id, "order_label": order.label, "rows": rows, "totals": totals}


def machine_schedule(s: Session, machine_type: str, machine_id: int, *, include_closed: bool = True) -> list[ProductionPlan]:
    q = s.query(ProductionPlan).filter(
        ProductionPlan.machine_type == machine_type,
        ProductionPlan.machine_id == machine_id,
    )
    if not include_closed:
        q = q.filter(ProductionPlan.status.in_(USAGE_OPEN_STATUSES))
    plans = q.all()
    # Unscheduled plans go last.
    return sorted(plans, key=lambda p: (p.start_date is None, p.start_date or date.max, p.id))
