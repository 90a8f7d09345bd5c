"""
Solvent mixtures (razvaritel aralashmasi).

Creating a mixture consumes solvent stock: each component is booked as a
strict `out` movement on the solvent's ledger, tagged with the mixture id.
Editing a mixture reverses those movements and books the new ones; deleting
it removes them, which restores the solvent stock.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Iterable

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.constants import DEFAULT_SOLVENT_DENSITY, SOLVENT_DENSITIES
from app.polimaks.modules.inventory.models import Solvent, StockTransaction
from app.polimaks.modules.inventory.service import book_movement, recompute_quantity, stock_balance
from app.polimaks.utils import clean_str, parse_date, parse_float, parse_int

from .models import Mixture, MixtureComponent, MixtureTransaction

if TYPE_CHECKING:
    from app.polimaks.models import User


def density_for(solvent_type: str) -> float:
    return SOLVENT_DENSITIES.get((solvent_type or "").lower(), DEFAULT_SOLVENT_DENSITY)


def liters_to_kg(liters: float, solvent_type: str) -> float:
    return liters * density_for(solvent_type)


def calculate_totals(components: Iterable[tuple[Solvent, float]]) -> dict:
    """Totals for (solvent, liters) pairs; per-unit prices are 0 when nothing is mixed."""
    total_liter = 0.0
    total_kg = 0.0
    total_cost = 0.0
    for solvent, liters in components:
        total_liter += liters
        total_kg += liters_to_kg(liters, solvent.type)
        total_cost += liters * (solvent.price_per_liter or 0.0)
    return {
        "total_liter": round(total_liter, 3),
        "total_kg": round(total_kg, 3),
        "total_cost": round(total_cost, 2),
        "price_per_liter": total_cost / total_liter if total_liter > 0 else 0.0,
        "price_per_kg": total_cost / total_kg if total_kg > 0 else 0.0,
    }


def _component_pairs(s: Session, payload: dict) -> list[tuple[Solvent, float]]:
    pairs = []
    for comp in payload.get("components") or []:
        solvent = s.get(Solvent, parse_int((comp or {}).get("solvent_id")) or 0)
        liters = parse_float((comp or {}).get("quantity_liter")) or 0.0
        if solvent is not None and liters > 0:
            pairs.append((solvent, liters))
    return pairs


def validate_mixture_payload(s: Session, payload: dict, *, existing: Mixture | None = None) -> list[str]:
    """
    Name required, at least one component, one component per solvent type,
    each quantity within the solvent's stock. When editing, the stock this
    mixture already consumed counts as available.
    """
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Mixture name is required.")
    if payload.get("created_date") not in (None, "") and parse_date(payload.get("created_date")) is None:
        errors.append("Created date is invalid.")

    components = payload.get("components") or []
    if not isinstance(components, list):
        return errors + ["Components must be a list."]

    already_used: dict[int, float] = {}
    if existing is not None:
        for c in existing.components:
            if c.solvent_id:
                already_used[c.solvent_id] = already_used.get(c.solvent_id, 0.0) + c.quantity_liter

    seen_types: set[str] = set()
    currencies: set[str] = set()
    count = 0
    for comp in components:
        comp = comp or {}
        liters = parse_float(comp.get("quantity_liter"))
        if liters is None or liters == 0:
            continue
        if liters < 0:
            errors.append("Component quantity must be a positive number.")
            continue
        solvent = s.get(Solvent, parse_int(comp.get("solvent_id")) or 0)
        if solvent is None:
            errors.append(f"Unknown solvent: {comp.get('solvent_id')}")
            continue
        if solvent.type in seen_types:
            errors.append(f"Only one {solvent.type.upper()} component is allowed.")
        seen_types.add(solvent.type)
        currencies.add(solvent.price_currency)
        available = stock_balance(s, solvent) + already_used.get(solvent.id, 0.0)
        if liters - available > 1e-9:
            errors.append(f"{solvent.label}: only {available:g} L in stock.")
        count += 1
    if count == 0:
        errors.append("At least one component with a positive quantity is required.")
    if len(currencies) > 1:
        errors.append("All components must be priced in the same currency.")
    return errors


def _apply_totals(mixture: Mixture, pairs: list[tuple[Solvent, float]]) -> None:
    totals = calculate_totals(pairs)
    mixture.initial_liter = totals["total_liter"]
    mixture.total_kg = totals["total_kg"]
    mixture.total_cost = totals["total_cost"]
    mixture.price_per_liter = totals["price_per_liter"]
    mixture.price_per_kg = totals["price_per_kg"]
    if pairs:
        mixture.price_currency = pairs[0][0].price_currency


def _book_components(s: Session, mixture: Mixture, pairs: list[tuple[Solvent, float]], user: User) -> None:
    for solvent, liters in pairs:
        mixture.components.append(
            MixtureComponent(solvent_id=solvent.id, solvent_type=solvent.type, quantity_liter=round(liters, 3))
        )
        book_movement(
            s,
            solvent,
            "out",
            liters,
            user,
            on_date=mixture.created_date,
            strict=True,
            mixture_id=mixture.id,
            note=f"Mixture: {mixture.name}",
        )


def _reverse_components(s: Session, mixture: Mixture) -> None:
    rows = s.query(StockTransaction).filter(StockTransaction.mixture_id == mixture.id).all()
    solvent_ids = {r.item_id for r in rows if r.kind == "solvent"}
    for r in rows:
        s.delete(r)
    mixture.components.clear()
    s.flush()
    for sid in solvent_ids:
        solvent = s.get(Solvent, sid)
        if solvent is not None:
            recompute_quantity(s, solvent)


def recompute_mixture_balance(s: Session, mixture: Mixture) -> float:
    """Replays the mixture ledger from its initial liters; outs floor at zero."""
    s.flush()
    balance = mixture.initial_liter or 0.0
    txs = (
        s.query(MixtureTransaction)
        .filter(MixtureTransaction.mixture_id == mixture.id)
        .order_by(MixtureTransaction.date.asc(), MixtureTransaction.id.asc())
        .all()
    )
    for tx in txs:
        if tx.direction == "in":
            balance += tx.amount_liter
        else:
            balance = max(0.0, balance - tx.amount_liter)
    mixture.total_liter = round(balance, 3)
    return mixture.total_liter


def create_mixture(s: Session, payload: dict, user: User) -> Mixture:
    now = datetime.utcnow()
    mixture = Mixture(
        name=payload["name"].strip(),
        created_date=parse_date(payload.get("created_date")) or date.today(),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
    )
    s.add(mixture)
    s.flush()
    pairs = _component_pairs(s, payload)
    _apply_totals(mixture, pairs)
    _book_components(s, mixture, pairs, user)
    recompute_mixture_balance(s, mixture)
    record_event(
        s,
        actor=user,
        action="mixture.create",
        entity_type="Mixture",
        entity_id=str(mixture.id),
        metadata={
            "name": mixture.name,
            "total_liter": mixture.initial_liter,
            "components": {solvent.type: liters for solvent, liters in pairs},
        },
    )
    return mixture


def update_mixture(s: Session, mixture: Mixture, payload: dict, user: User) -> Mixture:
    before = {c.solvent_type: c.quantity_liter for c in mixture.components}
    _reverse_components(s, mixture)
    mixture.name = payload["name"].strip()
    mixture.created_date = parse_date(payload.get("created_date")) or mixture.created_date
    mixture.updated_at = datetime.utcnow()
    pairs = _component_pairs(s, payload)
    _apply_totals(mixture, pairs)
    _book_components(s, mixture, pairs, user)
    recompute_mixture_balance(s, mixture)
    record_event(
        s,
        actor=user,
        action="mixture.edit",
        entity_type="Mixture",
        entity_id=str(mixture.id),
        metadata={
            "name": mixture.name,
            "components": {"old": before, "new": {solvent.type: liters for solvent, liters in pairs}},
        },
    )
    return mixture


def delete_mixture(s: Session, mixture: Mixture, user: User) -> None:
    _reverse_components(s, mixture)
    record_event(
        s,
        actor=user,
        action="mixture.delete",
        entity_type="Mixture",
        entity_id=str(mixture.id),
        metadata={"name": mixture.name},
    )
    s.delete(mixture)


# ---------------------------------------------------------------------------
# Mixture transactions
# ---------------------------------------------------------------------------

def validate_mixture_transaction_payload(s: Session, payload: dict) -> list[str]:
    errors = []
    if s.get(Mixture, parse_int(payload.get("mixture_id")) or 0) is None:
        errors.append("Mixture is required.")
    if payload.get("direction") not in ("in", "out"):
        errors.append("Direction must be 'in' or 'out'.")
    amount = parse_float(payload.get("amount_liter"))
    if amount is None or amount <= 0:
        errors.append("Amount must be a positive number.")
    if parse_date(payload.get("date")) is None:
        errors.append("Date is required.")

    machine_type = clean_str(payload.get("machine_type"))
    machine_id = payload.get("machine_id")
    if payload.get("direction") == "out" and (not machine_type or machine_id in (None, "")):
        errors.append("Machine type and machine are required for out movements.")
    elif machine_type or machine_id not in (None, ""):
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


def _mixture_tx_values(payload: dict) -> dict:
    return {
        "mixture_id": parse_int(payload.get("mixture_id")),
        "date": parse_date(payload.get("date")),
        "direction": payload["direction"],
        "amount_liter": round(parse_float(payload.get("amount_liter")) or 0.0, 3),
        "machine_type": clean_str(payload.get("machine_type")),
        "machine_id": parse_int(payload.get("machine_id")),
        "order_id": parse_int(payload.get("order_id")),
        "note": clean_str(payload.get("note")),
    }


def create_mixture_transaction(s: Session, payload: dict, user: User) -> MixtureTransaction:
    tx = MixtureTransaction(**_mixture_tx_values(payload), created_at=datetime.utcnow(), created_by_user_id=user.id)
    s.add(tx)
    s.flush()
    mixture = s.get(Mixture, tx.mixture_id)
    recompute_mixture_balance(s, mixture)
    record_event(
        s,
        actor=user,
        action="mixture.transaction.create",
        entity_type="MixtureTransaction",
        entity_id=str(tx.id),
        metadata={"mixture_id": mixture.id, "direction": tx.direction, "amount_liter": tx.amount_liter, "balance": mixture.total_liter},
    )
    return tx


def update_mixture_transaction(s: Session, tx: MixtureTransaction, payload: dict, user: User) -> MixtureTransaction:
    old_mixture_id = tx.mixture_id
    changes = {}
    for attr, val in _mixture_tx_values(payload).items():
        old = getattr(tx, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(tx, attr, val)
    for mid in {old_mixture_id, tx.mixture_id}:
        recompute_mixture_balance(s, s.get(Mixture, mid))
    if changes:
        record_event(
            s,
            actor=user,
            action="mixture.transaction.edit",
            entity_type="MixtureTransaction",
            entity_id=str(tx.id),
            metadata={"changes": changes},
        )
    return tx


def delete_mixture_transaction(s: Session, tx: MixtureTransaction, user: User) -> None:
    mixture = s.get(Mixture, tx.mixture_id)
    record_event(
        s,
        actor=user,
        action="mixture.transaction.delete",
        entity_type="MixtureTransaction",
        entity_id=str(tx.id),
        metadata={"mixture_id": tx.mixture_id, "direction": tx.direction, "amount_liter": tx.amount_liter},
    )
    s.delete(tx)
    recompute_mixture_balance(s, mixture)


def list_mixture_transactions(s: Session, mixture_id: int | None = None) -> list[dict]:
    """Newest first, with mixture, machine and order labels resolved (unknown ids echoed)."""
    from app.polimaks.modules.clients.models import Order
    from app.polimaks.modules.machines.models import Machine

    q = s.query(MixtureTransaction)
    if mixture_id:
        q = q.filter(MixtureTransaction.mixture_id == mixture_id)
    txs = q.order_by(MixtureTransaction.date.desc(), MixtureTransaction.id.desc()).all()

    rows = []
    for tx in txs:
        machine = s.get(Machine, tx.machine_id) if tx.machine_id else None
        order = s.get(Order, tx.order_id) if tx.order_id else None
        rows.append(
            {
                "id": tx.id,
                "mixture_id": tx.mixture_id,
                "mixture_name": tx.mixture.name if tx.mixture else str(tx.mixture_id),
                "date": tx.date,
                "direction": tx.direction,
                "amount_liter": tx.amount_liter,
                "machine_type": tx.machine_type,
                "machine_id": tx.machine_id,
                "machine_name": machine.name if machine else (str(tx.machine_id) if tx.machine_id else ""),
                "order_id": tx.order_id,
                "order_label": order.label if order else (str(tx.order_id) if tx.order_id else ""),
                "note": tx.note or "",
            }
        )
    return rows
