from __future__ import annotations

from flask import Blueprint, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload
from app.polimaks.db import db_session
from app.polimaks.modules.inventory.service import InsufficientStockError
from app.polimaks.modules.mixtures.models import Mixture, MixtureTransaction
from app.polimaks.modules.mixtures.service import (
    create_mixture,
    create_mixture_transaction,
    delete_mixture,
    delete_mixture_transaction,
    list_mixture_transactions,
    liters_to_kg,
    update_mixture,
    update_mixture_transaction,
    validate_mixture_payload,
    validate_mixture_transaction_payload,
)
from app.polimaks.rbac import require_permission

bp = Blueprint("mixtures", __name__)


def serialize_mixture(m: Mixture) -> dict:
    return {
        "id": m.id,
        "name": m.name,
        "initial_liter": m.initial_liter,
        "total_liter": m.total_liter,
        "total_kg": m.total_kg,
        "total_cost": m.total_cost,
        "price_per_liter": round(m.price_per_liter, 4),
        "price_per_kg": round(m.price_per_kg, 4),
        "price_currency": m.price_currency,
        "created_date": iso(m.created_date),
        "components": [
            {
                "solvent_id": c.solvent_id,
                "solvent_type": c.solvent_type,
                "quantity_liter": c.quantity_liter,
                "quantity_kg": round(liters_to_kg(c.quantity_liter, c.solvent_type), 3),
            }
            for c in m.components
        ],
    }


@bp.get("/mixtures")
@require_permission("inventory.view")
def mixtures_list():
    s = db_session()
    mixtures = s.query(Mixture).order_by(Mixture.created_date.desc(), Mixture.id.desc()).all()
    return {"items": [serialize_mixture(m) for m in mixtures], "total": len(mixtures)}


@bp.post("/mixtures")
@require_permission("inventory.edit")
def mixtures_create():
    s = db_session()
    payload = json_payload()
    errors = validate_mixture_payload(s, payload)
    if errors:
        return errors_response(errors)
    try:
        mixture = create_mixture(s, payload, current_user())
    except InsufficientStockError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return serialize_mixture(mixture), 201


@bp.get("/mixtures/<int:mixture_id>")
@require_permission("inventory.view")
def mixtures_detail(mixture_id: int):
    s = db_session()
    mixture = get_or_404(s, Mixture, mixture_id)
    data = serialize_mixture(mixture)
    data["transactions"] = [{**r, "date": iso(r["date"])} for r in list_mixture_transactions(s, mixture.id)]
    return data


@bp.put("/mixtures/<int:mixture_id>")
@require_permission("inventory.edit")
def mixtures_update(mixture_id: int):
    s = db_session()
    mixture = get_or_404(s, Mixture, mixture_id)
    payload = json_payload()
    errors = validate_mixture_payload(s, payload, existing=mixture)
    if errors:
        return errors_response(errors)
    try:
        update_mixture(s, mixture, payload, current_user())
    except InsufficientStockError as e:
        s.rollback()
        return errors_response([str(e)], 409)
    s.commit()
    return serialize_mixture(mixture)


@bp.delete("/mixtures/<int:mixture_id>")
@require_permission("inventory.edit")
def mixtures_delete(mixture_id: int):
    s = db_session()
    mixture = get_or_404(s, Mixture, mixture_id)
    delete_mixture(s, mixture, current_user())
    s.commit()
    return {"ok": True}


@bp.get("/mixture-transactions")
@require_permission("inventory.view")
def mixture_transactions_list():
    s = db_session()
    rows = list_mixture_transactions(s, request.args.get("mixture_id", type=int))
    return {"items": [{**r, "date": iso(r["date"])} for r in rows], "total": len(rows)}


@bp.post("/mixture-transactions")
@require_permission("inventory.edit")
def mixture_transactions_create():
    s = db_session()
    payload = json_payload()
    errors = validate_mixture_transaction_payload(s, payload)
    if errors:
        return errors_response(errors)
    tx = create_mixture_transaction(s, payload, current_user())
    s.commit()
    return {"id": tx.id, "balance": tx.mixture.total_liter}, 201


@bp.put("/mixture-transactions/<int:tx_id>")
@require_permission("inventory.edit")
def mixture_transactions_update(tx_id: int):
    s = db_session()
    tx = get_or_404(s, MixtureTransaction, tx_id)
    payload = json_payload()
    errors = validate_mixture_transaction_payload(s, payload)
    if errors:
        return errors_response(errors)
    update_mixture_transaction(s, tx, payload, current_user())
    s.commit()
    return {"id": tx.id, "balance": tx.mixture.total_liter}


@bp.delete("/mixture-transactions/<int:tx_id>")
@require_permission("inventory.edit")
def mixture_transactions_delete(tx_id: int):
    s = db_session()
    tx = get_or_404(s, MixtureTransaction, tx_id)
    mixture_id = tx.mixture_id
    delete_mixture_transaction(s, tx, current_user())
    s.commit()
    return {"ok": True, "balance": s.get(Mixture, mixture_id).total_liter}
