"""
Cash book: incomes and expenses per payment method, with balances per
ledger currency (UZS, USD).
"""
from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import FINANCE_DIRECTIONS, FINANCE_METHODS, LEDGER_CURRENCIES
from app.polimaks.utils import clean_str, day_before, parse_date, parse_float, parse_int, validate_date_range

from .models import FinanceEntry

if TYPE_CHECKING:
    from app.polimaks.models import User


def normalize_currency(value) -> str:
    cur = (clean_str(value) or "UZS").upper()
    return cur if cur in LEDGER_CURRENCIES else "UZS"


def validate_finance_payload(s: Session, payload: dict) -> list[str]:
    errors = []
    if payload.get("direction") not in FINANCE_DIRECTIONS:
        errors.append("Direction must be 'income' or 'expense'.")
    if (payload.get("method") or "cash") not in FINANCE_METHODS:
        errors.append("Method must be 'cash' or 'transfer'.")
    amount = parse_float(payload.get("amount"))
    if amount is None or amount <= 0:
        errors.append("Amount must be a positive number.")
    if payload.get("date") not in (None, "") and parse_date(payload.get("date")) is None:
        errors.append("Date is invalid.")
    rate = payload.get("exchange_rate")
    if rate not in (None, "") and (parse_float(rate) or 0) <= 0:
        errors.append("Exchange rate must be a positive number.")
    client_id = parse_int(payload.get("client_id"))
    if client_id is not None:
        from app.polimaks.modules.clients.models import Client

        if s.get(Client, client_id) is None:
            errors.append(f"Unknown client: {payload.get('client_id')}")
    return errors


def _entry_values(payload: dict) -> dict[str, Any]:
    rate = parse_float(payload.get("exchange_rate"))
    return {
        "direction": payload["direction"],
        "name": (payload.get("name") or "").strip(),
        "method": payload.get("method") or "cash",
        "amount": parse_float(payload.get("amount")) or 0.0,
        "currency": normalize_currency(payload.get("currency")),
        "date": parse_date(payload.get("date")) or date.today(),
        "note": clean_str(payload.get("note")),
        "client_id": parse_int(payload.get("client_id")),
        "exchange_rate": rate if rate and rate > 0 else None,
    }


def create_entry(s: Session, payload: dict, user: User) -> FinanceEntry:
    entry = FinanceEntry(**_entry_values(payload), created_at=datetime.utcnow(), created_by_user_id=user.id)
    s.add(entry)
    s.flush()
    record_event(
        s,
        actor=user,
        action=f"finance.{entry.direction}.create",
        entity_type="FinanceEntry",
        entity_id=str(entry.id),
        metadata={"method": entry.method, "amount": entry.amount, "currency": entry.currency, "client_id": entry.client_id},
    )
    return entry


def update_entry(s: Session, entry: FinanceEntry, payload: dict, user: User) -> FinanceEntry:
    changes = {}
    for attr, val in _entry_values(payload).items():
        old = getattr(entry, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(entry, attr, val)
    if changes:
        record_event(
            s,
            actor=user,
            action=f"finance.{entry.direction}.edit",
            entity_type="FinanceEntry",
            entity_id=str(entry.id),
            metadata={"changes": changes},
        )
    return entry


def delete_entry(s: Session, entry: FinanceEntry, user: User) -> None:
    record_event(
        s,
        actor=user,
        action=f"finance.{entry.direction}.delete",
        entity_type="FinanceEntry",
        entity_id=str(entry.id),
        metadata={"amount": entry.amount, "currency": entry.currency},
    )
    s.delete(entry)


def list_entries(
    s: Session,
    *,
    direction: str | None = None,
    method: str | None = None,
    currency: str | None = None,
    client_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
    search: str | None = None,
) -> list[FinanceEntry]:
    q = s.query(FinanceEntry)
    if direction:
        q = q.filter(FinanceEntry.direction == direction)
    if method:
        q = q.filter(FinanceEntry.method == method)
    if currency:
        q = q.filter(FinanceEntry.currency == currency)
    if client_id:
        q = q.filter(FinanceEntry.client_id == client_id)
    if start:
        q = q.filter(FinanceEntry.date >= start)
    if end:
        q = q.filter(FinanceEntry.date <= end)
    if search:
        like = f"%{search.strip()}%"
        q = q.filter((FinanceEntry.name.ilike(like)) | (FinanceEntry.note.ilike(like)))
    return q.order_by(FinanceEntry.date.desc(), FinanceEntry.id.desc()).all()


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------

def _method_movements(s: Session, method: str) -> list[tuple[date, str, float]]:
    """
    Signed (date, currency, amount) rows for one method. Client `payment`
    transactions count as cash income.
    """
    from app.polimaks.modules.clients.models import ClientTransaction

    rows: list[tuple[date, str, float]] = []
    for e in s.query(FinanceEntry).filter(FinanceEntry.method == method).all():
        sign = 1 if e.direction == "income" else -1
        rows.append((e.date, e.currency, sign * e.amount))
    if method == "cash":
        for tx in s.query(ClientTransaction).filter(ClientTransaction.type == "payment").all():
            rows.append((tx.date, normalize_currency(tx.currency), tx.amount))
    return rows


def _totals(rows, predicate) -> dict[str, float]:
    totals = {cur: 0.0 for cur in LEDGER_CURRENCIES}
    for d, cur, amount in rows:
        if cur in totals and predicate(d):
            totals[cur] += amount
    return {cur: round(v, 2) for cur, v in totals.items()}


def method_balance(s: Session, method: str, start: date, end: date) -> dict:
    """
    Opening balance (up to the day before `start`), net movement in
    [start, end] and final balance, each per ledger currency.
    """
    if method not in FINANCE_METHODS:
        raise ValueError("Method must be 'cash' or 'transfer'.")
    err = validate_date_range(start, end)
    if err:
        raise ValueError(err)
    rows = _method_movements(s, method)
    cutoff = day_before(start)
    opening = _totals(rows, lambda d: d <= cutoff)
    net = _totals(rows, lambda d: start <= d <= end)
    final = {cur: round(opening[cur] + net[cur], 2) for cur in LEDGER_CURRENCIES}
    return {"method": method, "start": start, "end": end, "opening": opening, "net": net, "final": final}


def method_summary(s: Session, method: str, start: date, end: date) -> list[dict]:
    """Per-day incomes, expenses and net in [start, end], oldest first; idle days omitted."""
    if method not in FINANCE_METHODS:
        raise ValueError("Method must be 'cash' or 'transfer'.")
    err = validate_date_range(start, end)
    if err:
        raise ValueError(err)
    days: dict[date, dict] = {}
    for d, cur, amount in _method_movements(s, method):
        if not (start <= d <= end) or cur not in LEDGER_CURRENCIES:
            continue
        day = days.setdefault(
            d,
            {
                "income": {c: 0.0 for c in LEDGER_CURRENCIES},
                "expense": {c: 0.0 for c in LEDGER_CURRENCIES},
            },
        )
        if amount >= 0:
            day["income"][cur] += amount
        else:
            day["expense"][cur] += -amount
    out = []
    for d in sorted(days):
        inc = days[d]["income"]
        exp = days[d]["expense"]
        out.append(
            {
                "date": d,
                "income": {c: round(v, 2) for c, v in inc.items()},
                "expense": {c: round(v, 2) for c, v in exp.items()},
                "net": {c: round(inc[c] - exp[c], 2) for c in LEDGER_CURRENCIES},
            }
        )
    return out
