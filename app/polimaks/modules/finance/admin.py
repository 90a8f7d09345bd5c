from __future__ import annotations

from datetime import date

from flask import Blueprint, current_app, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.constants import FINANCE_DIRECTIONS, FINANCE_METHODS
from app.polimaks.db import db_session
from app.polimaks.modules.finance.models import FinanceEntry
from app.polimaks.modules.finance.rates import current_rates, override_dates, rate_for_date, set_rate_override
from app.polimaks.modules.finance.service import (
    create_entry,
    delete_entry,
    list_entries,
    method_balance,
    method_summary,
    update_entry,
    validate_finance_payload,
)
from app.polimaks.rbac import require_permission
from app.polimaks.utils import parse_date, parse_float

bp = Blueprint("finance", __name__)


def serialize_entry(e: FinanceEntry) -> dict:
    return {
        "id": e.id,
        "direction": e.direction,
        "name": e.name,
        "method": e.method,
        "amount": e.amount,
        "currency": e.currency,
        "date": iso(e.date),
        "note": e.note or "",
        "client_id": e.client_id,
        "client_name": e.client.display_name if e.client else None,
        "exchange_rate": e.exchange_rate,
    }


def _range_args() -> tuple[date, date]:
    start = parse_date(request.args.get("start")) or date.today()
    end = parse_date(request.args.get("end")) or start
    return start, end


@bp.get("/finance/entries")
@require_permission("finance.view")
def entries_list():
    s = db_session()
    direction = (request.args.get("direction") or "").strip() or None
    if direction and direction not in FINANCE_DIRECTIONS:
        return errors_response([f"Unknown direction: {direction}"])
    entries = list_entries(
        s,
        direction=direction,
        method=(request.args.get("method") or "").strip() or None,
        currency=(request.args.get("currency") or "").strip().upper() or None,
        client_id=request.args.get("client_id", type=int),
        start=parse_date(request.args.get("start")),
        end=parse_date(request.args.get("end")),
        search=request.args.get("q"),
    )
    return {"items": [serialize_entry(e) for e in entries], "total": len(entries)}


@bp.post("/finance/entries")
@require_permission("finance.edit")
def entries_create():
    s = db_session()
    payload = json_payload()
    errors = validate_finance_payload(s, payload)
    if errors:
        return errors_response(errors)
    entry = create_entry(s, payload, current_user())
    s.commit()
    return serialize_entry(entry), 201


@bp.put("/finance/entries/<int:entry_id>")
@require_permission("finance.edit")
def entries_update(entry_id: int):
    s = db_session()
    entry = get_or_404(s, FinanceEntry, entry_id)
    payload = json_payload()
    errors = validate_finance_payload(s, payload)
    if errors:
        return errors_response(errors)
    update_entry(s, entry, payload, current_user())
    s.commit()
    return serialize_entry(entry)


@bp.delete("/finance/entries/<int:entry_id>")
@require_permission("finance.edit")
def entries_delete(entry_id: int):
    s = db_session()
    entry = get_or_404(s, FinanceEntry, entry_id)
    delete_entry(s, entry, current_user())
    s.commit()
    return {"ok": True}


@bp.get("/finance/methods/<method>/balance")
@require_permission("finance.view")
def methods_balance(method: str):
    if method not in FINANCE_METHODS:
        return errors_response([f"Unknown method: {method}"], 404)
    s = db_session()
    start, end = _range_args()
    try:
        result = method_balance(s, method, start, end)
    except ValueError as e:
        return errors_response([str(e)])
    return {**result, "start": iso(result["start"]), "end": iso(result["end"])}


@bp.get("/finance/methods/<method>/summary")
@require_permission("finance.view")
def methods_summary(method: str):
    if method not in FINANCE_METHODS:
        return errors_response([f"Unknown method: {method}"], 404)
    s = db_session()
    start, end = _range_args()
    try:
        days = method_summary(s, method, start, end)
    except ValueError as e:
        return errors_response([str(e)])
    return {"method": method, "start": iso(start), "end": iso(end), "days": [{**d, "date": iso(d["date"])} for d in days]}


@bp.get("/finance/rates")
@require_permission("finance.view")
def rates_get():
    s = db_session()
    rates = current_rates(current_app.config)
    on_date = parse_date(request.args.get("date")) or date.today()
    return {
        "rates": rates,
        "date": iso(on_date),
        "for_date": {cur: rate_for_date(s, cur, on_date, rates) for cur in rates},
        "overrides": [{"date": iso(o["date"]), "rates": o["rates"]} for o in override_dates(s)],
    }


@bp.put("/finance/rates/<rate_date>/<currency>")
@require_permission("finance.edit")
def rates_override(rate_date: str, currency: str):
    s = db_session()
    on_date = parse_date(rate_date)
    if on_date is None:
        return errors_response(["Date is invalid."])
    raw = json_payload().get("rate")
    value = None if raw in (None, "") else parse_float(raw)
    if raw not in (None, "") and value is None:
        return errors_response(["Rate must be a number."])
    try:
        row = set_rate_override(s, on_date, currency.upper(), value, current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"date": iso(on_date), "currency": currency.upper(), "rate": row.rate if row else None}
