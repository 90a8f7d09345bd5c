from __future__ import annotations

from datetime import date

from flask import Blueprint, abort, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.db import db_session
from app.polimaks.modules.inventory.models import Cylinder, Glue, StockTransaction
from app.polimaks.modules.inventory.service import (
    KINDS,
    create_item,
    delete_item,
    delete_transaction,
    get_item,
    inventory_summary,
    ledger,
    list_items,
    period_balance,
    record_cylinder_usage,
    record_transaction,
    update_item,
    update_transaction,
    validate_item_payload,
    validate_transaction_payload,
)
from app.polimaks.rbac import require_permission
from app.polimaks.utils import parse_date

bp = Blueprint("inventory", __name__)

_LIST_FILTERS = {
    "film": ("category", "subcategory"),
    "solvent": ("type",),
    "cylinder": ("origin",),
    "finished_product": ("location", "client_id"),
}


def _jsonable(value):
    if isinstance(value, date):
        return value.isoformat()
    return value


def serialize_item(item) -> dict:
    data = {c.key: _jsonable(getattr(item, c.key)) for c in item.__table__.columns}
    data.pop("created_by_user_id", None)
    data["kind"] = item.KIND
    data["unit"] = item.UNIT
    data["label"] = item.label
    data["unit_price"] = item.unit_price
    if isinstance(item, Glue):
        data["total_net_weight"] = item.total_net_weight
        data["total_gross_weight"] = item.total_gross_weight
    if isinstance(item, Cylinder):
        data["limit_reached"] = bool(item.usage_limit) and item.usage >= item.usage_limit
    return data


def _ledger_row(row: dict) -> dict:
    return {**row, "date": iso(row["date"])}


def _check_kind(kind: str) -> None:
    if kind not in KINDS:
        abort(404)


def _item_or_404(s, kind: str, item_id: int):
    _check_kind(kind)
    item = get_item(s, kind, item_id)
    if item is None:
        abort(404)
    return item


def _tx_or_404(s, item, tx_id: int) -> StockTransaction:
    tx = get_or_404(s, StockTransaction, tx_id)
    if tx.kind != item.KIND or tx.item_id != item.id:
        abort(404)
    return tx


@bp.get("/inventory")
@require_permission("inventory.view")
def inventory_index():
    s = db_session()
    return {"kinds": list(KINDS), "summary": inventory_summary(s)}


@bp.get("/inventory/<kind>")
@require_permission("inventory.view")
def items_list(kind: str):
    _check_kind(kind)
    s = db_session()
    filters = {f: request.args.get(f) for f in _LIST_FILTERS.get(kind, ())}
    items = list_items(s, kind, request.args.get("q"), filters)
    return {"items": [serialize_item(i) for i in items], "total": len(items)}


@bp.post("/inventory/<kind>")
@require_permission("inventory.edit")
def items_create(kind: str):
    _check_kind(kind)
    s = db_session()
    payload = json_payload()
    errors = validate_item_payload(s, kind, payload)
    if errors:
        return errors_response(errors)
    item = create_item(s, kind, payload, current_user())
    s.commit()
    return serialize_item(item), 201


@bp.get("/inventory/<kind>/<int:item_id>")
@require_permission("inventory.view")
def items_detail(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    data = serialize_item(item)
    data["ledger"] = [_ledger_row(r) for r in ledger(s, item)]
    return data


@bp.put("/inventory/<kind>/<int:item_id>")
@require_permission("inventory.edit")
def items_update(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    payload = json_payload()
    errors = validate_item_payload(s, kind, payload, partial=True)
    if errors:
        return errors_response(errors)
    update_item(s, item, payload, current_user())
    s.commit()
    return serialize_item(item)


@bp.delete("/inventory/<kind>/<int:item_id>")
@require_permission("inventory.edit")
def items_delete(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    delete_item(s, item, current_user())
    s.commit()
    return {"ok": True}


@bp.get("/inventory/<kind>/<int:item_id>/transactions")
@require_permission("inventory.view")
def transactions_list(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    rows = [_ledger_row(r) for r in ledger(s, item)]
    return {"item": serialize_item(item), "items": rows, "balance": item.quantity}


@bp.post("/inventory/<kind>/<int:item_id>/transactions")
@require_permission("inventory.edit")
def transactions_create(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    payload = json_payload()
    errors = validate_transaction_payload(s, kind, payload)
    if errors:
        return errors_response(errors)
    tx = record_transaction(s, item, payload, current_user())
    s.commit()
    return {"id": tx.id, "balance": item.quantity}, 201


@bp.put("/inventory/<kind>/<int:item_id>/transactions/<int:tx_id>")
@require_permission("inventory.edit")
def transactions_update(kind: str, item_id: int, tx_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    tx = _tx_or_404(s, item, tx_id)
    if tx.mixture_id or tx.plan_id:
        return errors_response(["This movement is managed by a mixture or production plan."], 409)
    payload = json_payload()
    errors = validate_transaction_payload(s, kind, payload)
    if errors:
        return errors_response(errors)
    update_transaction(s, item, tx, payload, current_user())
    s.commit()
    return {"id": tx.id, "balance": item.quantity}


@bp.delete("/inventory/<kind>/<int:item_id>/transactions/<int:tx_id>")
@require_permission("inventory.edit")
def transactions_delete(kind: str, item_id: int, tx_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    tx = _tx_or_404(s, item, tx_id)
    if tx.mixture_id or tx.plan_id:
        return errors_response(["This movement is managed by a mixture or production plan."], 409)
    delete_transaction(s, item, tx, current_user())
    s.commit()
    return {"ok": True, "balance": item.quantity}


@bp.get("/inventory/<kind>/<int:item_id>/balance")
@require_permission("inventory.view")
def items_period_balance(kind: str, item_id: int):
    s = db_session()
    item = _item_or_404(s, kind, item_id)
    start = parse_date(request.args.get("start")) or item.created_date
    end = parse_date(request.args.get("end")) or date.today()
    try:
        result = period_balance(s, item, start, end)
    except ValueError as e:
        return errors_response([str(e)])
    return {**result, "start": iso(result["start"]), "end": iso(result["end"])}


@bp.post("/inventory/cylinder/<int:item_id>/usage")
@require_permission("inventory.edit")
def cylinder_usage(item_id: int):
    s = db_session()
    item = _item_or_404(s, "cylinder", item_id)
    try:
        result = record_cylinder_usage(s, item, json_payload().get("amount"), current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return result
