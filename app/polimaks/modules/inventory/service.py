"""
Warehouse (ombor) service layer.

Every item kind keeps an opening `initial_quantity` and a ledger of
StockTransaction rows. The stored `quantity` is always
initial + ins - outs (rounded to 3 places, never below zero) and is
recomputed after each ledger change.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Callable

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import (
    CURRENCIES,
    CYLINDER_ORIGINS,
    FILM_CATEGORIES,
    FINISHED_PRODUCT_LOCATIONS,
    SOLVENT_DENSITIES,
)
from app.polimaks.utils import clean_str, day_before, parse_date, parse_float, parse_int, validate_date_range

from .models import (
    Cylinder,
    Film,
    FinishedProduct,
    Glue,
    LiquidPaint,
    Paint,
    Solvent,
    SparePart,
    StockTransaction,
    Waste,
)

if TYPE_CHECKING:
    from app.polimaks.models import User

logger = logging.getLogger(__name__)

KINDS: dict[str, type] = {
    "film": Film,
    "paint": Paint,
    "liquid_paint": LiquidPaint,
    "glue": Glue,
    "solvent": Solvent,
    "cylinder": Cylinder,
    "spare_part": SparePart,
    "waste": Waste,
    "finished_product": FinishedProduct,
}

# Consumables must name the machine they were issued to.
MACHINE_REQUIRED_KINDS = frozenset({"film", "paint", "liquid_paint", "solvent", "glue", "cylinder"})

DIRECTIONS = ("in", "out")

OPENING_NOTE = "generated from stock"


class InsufficientStockError(ValueError):
    def __init__(self, item, requested: float, available: float):
        self.item = item
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for {item.KIND} {item.label}: requested {requested:g} {item.UNIT}, available {available:g}."
        )


def model_for(kind: str) -> type:
    try:
        return KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown inventory kind: {kind}") from None


def _num(value) -> float:
    return parse_float(value) or 0.0


_COMMON_FIELDS: dict[str, Callable[[Any], Any]] = {
    "price_currency": lambda v: (clean_str(v) or "UZS").upper(),
    "description": clean_str,
}

_KIND_FIELDS: dict[str, dict[str, Callable[[Any], Any]]] = {
    "film": {
        "category": lambda v: clean_str(v) or "BOPP",
        "subcategory": clean_str,
        "thickness": _num,
        "width": _num,
        "price_per_kg": _num,
        "series_number": clean_str,
        "admin": clean_str,
    },
    "paint": {
        "color_name": lambda v: clean_str(v) or "",
        "color_hex": lambda v: clean_str(v) or "#000000",
        "price_per_kg": _num,
        "series_number": clean_str,
        "marka": clean_str,
        "supplier": clean_str,
    },
    "glue": {
        "received_date": parse_date,
        "number_identifier": clean_str,
        "type": clean_str,
        "supplier": clean_str,
        "name": lambda v: clean_str(v) or "",
        "net_weight": _num,
        "gross_weight": _num,
        "price": _num,
    },
    "solvent": {
        "type": lambda v: (clean_str(v) or "eaf").lower(),
        "price_per_liter": _num,
        "series_number": clean_str,
        "supplier": clean_str,
    },
    "cylinder": {
        "origin": lambda v: clean_str(v) or "china",
        "series_number": clean_str,
        "length": _num,
        "diameter": _num,
        "usage": _num,
        "usage_limit": _num,
        "price": _num,
    },
    "spare_part": {"title": lambda v: clean_str(v) or "", "price": _num},
    "waste": {"title": lambda v: clean_str(v) or "", "price_per_kg": _num},
    "finished_product": {
        "location": lambda v: clean_str(v) or "tashkent",
        "title": lambda v: clean_str(v) or "",
        "total_meter": _num,
        "price_per_kg": _num,
        "client_id": parse_int,
    },
}
_KIND_FIELDS["liquid_paint"] = _KIND_FIELDS["paint"]


def _non_negative(payload: dict, field: str, label: str, errors: list[str]) -> None:
    if field not in payload or payload.get(field) in (None, ""):
        return
    v = parse_float(payload.get(field))
    if v is None or v < 0:
        errors.append(f"{label} must be zero or more.")


def validate_item_payload(s: Session, kind: str, payload: dict, *, partial: bool = False) -> list[str]:
    errors: list[str] = []

    def present(field: str) -> bool:
        return not partial or field in payload

    for field, label in (("initial_quantity", "Quantity"), ("price", "Price"), ("price_per_kg", "Price per kg"),
                         ("price_per_liter", "Price per liter"), ("net_weight", "Net weight"),
                         ("gross_weight", "Gross weight"), ("total_meter", "Total meter"), ("usage", "Usage")):
        _non_negative(payload, field, label, errors)

    if present("price_currency") and (payload.get("price_currency") or "UZS").upper() not in CURRENCIES:
        errors.append(f"Currency must be one of: {', '.join(CURRENCIES)}.")
    if payload.get("created_date") not in (None, "") and parse_date(payload.get("created_date")) is None:
        errors.append("Created date is invalid.")

    if kind == "film":
        category = payload.get("category") or "BOPP"
        if present("category") and category not in FILM_CATEGORIES:
            errors.append(f"Category must be one of: {', '.join(FILM_CATEGORIES)}.")
        elif payload.get("subcategory") and payload["subcategory"] not in FILM_CATEGORIES.get(category, ()):
            errors.append(f"Sub-category '{payload['subcategory']}' does not belong to {category}.")
        for field, label in (("thickness", "Thickness"), ("width", "Width")):
            if present(field) and (parse_float(payload.get(field)) or 0) <= 0:
                errors.append(f"{label} must be a positive number.")
    elif kind in ("paint", "liquid_paint"):
        if present("color_name") and not clean_str(payload.get("color_name")):
            errors.append("Color name is required.")
    elif kind == "glue":
        if present("name") and not clean_str(payload.get("name")):
            errors.append("Glue name is required.")
        if payload.get("received_date") not in (None, "") and parse_date(payload.get("received_date")) is None:
            errors.append("Received date is invalid.")
    elif kind == "solvent":
        if present("type") and (payload.get("type") or "").lower() not in SOLVENT_DENSITIES:
            errors.append(f"Solvent type must be one of: {', '.join(SOLVENT_DENSITIES)}.")
    elif kind == "cylinder":
        if present("origin") and (payload.get("origin") or "china") not in CYLINDER_ORIGINS:
            errors.append(f"Origin must be one of: {', '.join(CYLINDER_ORIGINS)}.")
        if present("usage_limit") and (parse_float(payload.get("usage_limit")) or 0) <= 0:
            errors.append("Usage limit must be a positive number.")
    elif kind in ("spare_part", "waste"):
        if present("title") and not clean_str(payload.get("title")):
            errors.append("Title is required.")
    elif kind == "finished_product":
        if present("location") and (payload.get("location") or "tashkent") not in FINISHED_PRODUCT_LOCATIONS:
            errors.append(f"Location must be one of: {', '.join(FINISHED_PRODUCT_LOCATIONS)}.")
        if present("title") and not clean_str(payload.get("title")):
            errors.append("Title is required.")
        client_id = parse_int(payload.get("client_id"))
        if client_id is not None:
            from app.polimaks.modules.clients.models import Client

            if s.get(Client, client_id) is None:
                errors.append(f"Unknown client: {client_id}")
    return errors


def _item_values(kind: str, payload: dict, *, partial: bool = False) -> dict[str, Any]:
    fields = {**_COMMON_FIELDS, **_KIND_FIELDS[kind]}
    values = {}
    for field, parse in fields.items():
        if partial and field not in payload:
            continue
        values[field] = parse(payload.get(field))
    return values


def create_item(s: Session, kind: str, payload: dict, user: User):
    model = model_for(kind)
    now = datetime.utcnow()
    initial = _num(payload.get("initial_quantity"))
    item = model(
        **_item_values(kind, payload),
        initial_quantity=initial,
        quantity=round(max(initial, 0.0), 3),
        created_date=parse_date(payload.get("created_date")) or date.today(),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(item)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"inventory.{kind}.create",
        entity_type=model.__name__,
        entity_id=str(item.id),
        metadata={"label": item.label, "initial_quantity": initial},
    )
    return item


def update_item(s: Session, item, payload: dict, user: User):
    kind = item.KIND
    values = _item_values(kind, payload, partial=True)
    if "initial_quantity" in payload:
        values["initial_quantity"] = _num(payload.get("initial_quantity"))
    if payload.get("created_date"):
        values["created_date"] = parse_date(payload.get("created_date")) or item.created_date

    changes = {}
    for attr, val in values.items():
        old = getattr(item, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(item, attr, val)
    item.updated_at = datetime.utcnow()
    if "initial_quantity" in changes:
        recompute_quantity(s, item)
    if changes:
        record_event(
            s,
            actor=user,
            action=f"inventory.{kind}.edit",
            entity_type=type(item).__name__,
            entity_id=str(item.id),
            metadata={"changes": changes},
        )
    return item


def delete_item(s: Session, item, user: User) -> None:
    """Deletes the item together with its ledger rows."""
    removed = (
        s.query(StockTransaction)
        .filter(StockTransaction.kind == item.KIND, StockTransaction.item_id == item.id)
        .delete(synchronize_session=False)
    )
    record_event(
        s,
        actor=user,
        action=f"inventory.{item.KIND}.delete",
        entity_type=type(item).__name__,
        entity_id=str(item.id),
        metadata={"label": item.label, "transactions_removed": removed},
    )
    s.delete(item)


def get_item(s: Session, kind: str, item_id: int):
    return s.get(model_for(kind), item_id)


_SEARCH_FIELDS = {
    "film": ("category", "subcategory", "series_number", "admin", "description"),
    "paint": ("color_name", "marka", "series_number", "supplier", "description"),
    "liquid_paint": ("color_name", "marka", "series_number", "supplier", "description"),
    "glue": ("name", "number_identifier", "type", "supplier"),
    "solvent": ("type", "series_number", "supplier"),
    "cylinder": ("origin", "series_number", "description"),
    "spare_part": ("title", "description"),
    "waste": ("title", "description"),
    "finished_product": ("title", "location", "description"),
}


def list_items(s: Session, kind: str, search: str | None = None, filters: dict[str, Any] | None = None) -> list:
    model = model_for(kind)
    q = s.query(model)
    for field, value in (filters or {}).items():
        if value in (None, ""):
            continue
        if not hasattr(model, field):
            continue
        q = q.filter(getattr(model, field) == value)
    search = (search or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(*[getattr(model, f).ilike(like) for f in _SEARCH_FIELDS[kind]]))
    return q.order_by(model.created_date.desc(), model.id.desc()).all()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def _transactions_query(s: Session, item):
    return s.query(StockTransaction).filter(
        StockTransaction.kind == item.KIND,
        StockTransaction.item_id == item.id,
    )




def _net_movement(s: Session, item, *, start: date | None = None, end: date | None = None) -> float:
    signed = case((StockTransaction.direction == "in", StockTransaction.amount), else_=-StockTransaction.amount)
    q = _transactions_query(s, item).with_entities(func.coalesce(func.sum(signed), 0.0))
    if start:
        q = q.filter(StockTransaction.date >= start)
    if end:
        q = q.filter(StockTransaction.date <= end)
    return float(q.scalar() or 0.0)


def _clamp(value: float) -> float:
    return max(0.0, round(value, 3))


def _opening_counts(item, start: date | None, end: date | None) -> bool:
    """Whether the opening stock, dated at `created_date`, falls inside [start, end]."""
    created = item.created_date
    if created is None:
        return start is None
    if start and created < start:
        return False
    return end is None or created <= end


def stock_balance(s: Session, item, *, as_of: date | None = None) -> float:
    """Initial quantity plus every movement up to `as_of` (inclusive)."""
    opening = (item.initial_quantity or 0.0) if _opening_counts(item, None, as_of) else 0.0
    return _clamp(opening + _net_movement(s, item, end=as_of))


def recompute_quantity(s: Session, item) -> float:
    s.flush()
    item.quantity = stock_balance(s, item)
    return item.quantity


def validate_transaction_payload(s: Session, kind: str, payload: dict) -> list[str]:
    errors = []
    direction = payload.get("direction")
    if direction not in DIRECTIONS:
        errors.append("Direction must be 'in' or 'out'.")
    amount = parse_float(payload.get("amount"))
    if amount is None or amount <= 0:
        errors.append("Amount must be a positive number.")
    if parse_date(payload.get("date")) is None:
        errors.append("Date is required.")

    machine_type = clean_str(payload.get("machine_type"))
    machine_id = payload.get("machine_id")
    if direction == "out" and kind in MACHINE_REQUIRED_KINDS:
        if not machine_type or machine_id in (None, ""):
            errors.append("Machine type and machine are required for out movements.")
    if machine_type or machine_id not in (None, ""):
        from app.polimaks.modules.machines.service import resolve_machine

        try:
            resolve_machine(s, machine_type, machine_id)
        except ValueError as e:
            errors.append(str(e))

    order_id = parse_int(payload.get("order_id"))
    if order_id is not None:
        from app.polimaks.modules.clients.models import Order

        if s.get(Order, order_id) is None:
            errors.append(f"Unknown order: {payload.get('order_id')}")
    return errors


def book_movement(
    s: Session,
    item,
    direction: str,
    amount: float,
    user: User,
    *,
    on_date: date | None = None,
    strict: bool = False,
    machine_type: str | None = None,
    machine_id: int | None = None,
    order_id: int | None = None,
    plan_id: int | None = None,
    mixture_id: int | None = None,
    unit_price: float | None = None,
    currency: str | None = None,
    note: str | None = None,
) -> StockTransaction:
    """
    Append one ledger row and refresh the item's quantity.

    With `strict`, an out movement larger than the current balance raises
    InsufficientStockError and nothing is written. Otherwise the balance
    simply floors at zero.
    """
    if direction not in DIRECTIONS:
        raise ValueError("Direction must be 'in' or 'out'.")
    if amount is None or amount <= 0:
        raise ValueError("Amount must be a positive number.")
    if strict and direction == "out":
        available = stock_balance(s, item)
        if amount - available > 1e-9:
            raise InsufficientStockError(item, amount, available)

    tx = StockTransaction(
        kind=item.KIND,
        item_id=item.id,
        date=on_date or date.today(),
        direction=direction,
        amount=round(amount, 3),
        machine_type=machine_type,
        machine_id=machine_id,
        order_id=order_id,
        plan_id=plan_id,
        mixture_id=mixture_id,
        unit_price=unit_price,
        currency=currency,
        note=note,
        created_at=datetime.utcnow(),
        created_by_user_id=user.id if user else None,
    )
    s.add(tx)
    recompute_quantity(s, item)
    return tx


def record_transaction(s: Session, item, payload: dict, user: User) -> StockTransaction:
    """Manual ledger entry from the warehouse screens (payload already validated)."""
    tx = book_movement(
        s,
        item,
        payload["direction"],
        parse_float(payload.get("amount")) or 0.0,
        user,
        on_date=parse_date(payload.get("date")),
        machine_type=clean_str(payload.get("machine_type")),
        machine_id=parse_int(payload.get("machine_id")),
        order_id=parse_int(payload.get("order_id")),
        note=clean_str(payload.get("note")),
    )
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"inventory.{item.KIND}.transaction",
        entity_type="StockTransaction",
        entity_id=str(tx.id),
        metadata={
            "item_id": item.id,
            "direction": tx.direction,
            "amount": tx.amount,
            "balance": item.quantity,
        },
    )
    return tx


def update_transaction(s: Session, item, tx: StockTransaction, payload: dict, user: User) -> StockTransaction:
    values = {
        "direction": payload["direction"],
        "amount": round(parse_float(payload.get("amount")) or 0.0, 3),
        "date": parse_date(payload.get("date")) or tx.date,
        "machine_type": clean_str(payload.get("machine_type")),
        "machine_id": parse_int(payload.get("machine_id")),
        "order_id": parse_int(payload.get("order_id")),
        "note": clean_str(payload.get("note")),
    }
    changes = {}
    for attr, val in values.items():
        old = getattr(tx, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(tx, attr, val)
    recompute_quantity(s, item)
    if changes:
        record_event(
            s,
            actor=user,
            action=f"inventory.{item.KIND}.transaction.edit",
            entity_type="StockTransaction",
            entity_id=str(tx.id),
            metadata={"item_id": item.id, "changes": changes, "balance": item.quantity},
        )
    return tx


def delete_transaction(s: Session, item, tx: StockTransaction, user: User) -> None:
    record_event(
        s,
        actor=user,
        action=f"inventory.{item.KIND}.transaction.delete",
        entity_type="StockTransaction",
        entity_id=str(tx.id),
        metadata={"item_id": item.id, "direction": tx.direction, "amount": tx.amount},
    )
    s.delete(tx)
    recompute_quantity(s, item)


def ledger(s: Session, item) -> list[dict]:
    """
    Ledger rows newest first, each carrying the running balance after it.
    The oldest row is a synthesised opening entry for `initial_quantity`.
    """
    txs = _transactions_query(s, item).order_by(StockTransaction.date.asc(), StockTransaction.id.asc()).all()
    opening = {
        "id": None,
        "date": item.created_date,
        "direction": "in",
        "amount": item.initial_quantity or 0.0,
        "machine_type": None,
        "machine_id": None,
        "order_id": None,
        "plan_id": None,
        "mixture_id": None,
        "note": OPENING_NOTE,
        "generated": True,
    }
    rows = [opening]
    running = item.initial_quantity or 0.0
    opening["balance"] = _clamp(running)
    for tx in txs:
        running += tx.amount if tx.direction == "in" else -tx.amount
        rows.append(
            {
                "id": tx.id,
                "date": tx.date,
                "direction": tx.direction,
                "amount": tx.amount,
                "machine_type": tx.machine_type,
                "machine_id": tx.machine_id,
                "order_id": tx.order_id,
                "plan_id": tx.plan_id,
                "mixture_id": tx.mixture_id,
                "note": tx.note or "",
                "generated": False,
                "balance": _clamp(running),
            }
        )
    rows.reverse()
    return rows


def period_balance(s: Session, item, start: date, end: date) -> dict:
    """
    Opening balance (everything up to the day before `start`), net movement
    inside [start, end] and the final balance at `end`.
    """
    err = validate_date_range(start, end)
    if err:
        raise ValueError(err)
    opening = stock_balance(s, item, as_of=day_before(start))
    movement = _net_movement(s, item, start=start, end=end)
    if _opening_counts(item, start, end):
        movement += item.initial_quantity or 0.0
    return {
        "start": start,
        "end": end,
        "opening": opening,
        "net": round(movement, 3),
        "final": stock_balance(s, item, as_of=end),
    }


def record_cylinder_usage(s: Session, item: Cylinder, amount, user: User) -> dict:
    value = parse_float(amount)
    if value is None or value <= 0:
        raise ValueError("Usage must be a positive number.")
    old = item.usage or 0.0
    item.usage = round(old + value, 3)
    item.updated_at = datetime.utcnow()
    limit_reached = bool(item.usage_limit) and item.usage >= item.usage_limit
    if limit_reached:
        logger.info("Cylinder %s reached its usage limit (%s/%s)", item.id, item.usage, item.usage_limit)
    record_event(
        s,
        actor=user,
        action="inventory.cylinder.usage",
        entity_type="Cylinder",
        entity_id=str(item.id),
        metadata={"from": old, "to": item.usage, "usage_limit": item.usage_limit},
    )
    return {"usage": item.usage, "usage_limit": item.usage_limit, "limit_reached": limit_reached}


def inventory_summary(s: Session) -> dict[str, dict]:
    """Item count, total quantity and stock value per currency for every kind."""
    summary = {}
    for kind, model in KINDS.items():
        items = s.query(model).all()
        value_by_currency: dict[str, float] = {}
        for item in items:
            value = (item.quantity or 0.0) * item.unit_price
            if value:
                cur = item.price_currency or "UZS"
                value_by_currency[cur] = round(value_by_currency.get(cur, 0.0) + value, 2)
        summary[kind] = {
            "unit": model.UNIT,
            "count": len(items),
            "total_quantity": round(sum(i.quantity or 0.0 for i in items), 3),
            "value_by_currency": value_by_currency,
        }
    return summary
