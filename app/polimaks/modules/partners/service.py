from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from app.polimaks.audit import record_event
from app.polimaks.utils import clean_str, raw_phone, validate_phone

from .models import Partner

if TYPE_CHECKING:
    from app.polimaks.models import User


def normalize_categories(value) -> list[str]:
    """Non-empty, stripped, first occurrence wins (case-insensitive)."""
    if isinstance(value, str):
        value = value.split(",")
    out: list[str] = []
    seen: set[str] = set()
    for raw in value or []:
        cat = (str(raw) if raw is not None else "").strip()
        if cat and cat.lower() not in seen:
            seen.add(cat.lower())
            out.append(cat)
    return out


def validate_partner_payload(payload: dict) -> list[str]:
    errors = []
    if not (payload.get("full_name") or "").strip():
        errors.append("Full name is required.")
    err = validate_phone(payload.get("phone"))
    if err:
        errors.append(err)
    cats = payload.get("categories")
    if cats is not None and not isinstance(cats, (list, str)):
        errors.append("Categories must be a list.")
    return errors


def _partner_values(payload: dict) -> dict:
    return {
        "full_name": payload["full_name"].strip(),
        "phone": raw_phone(payload.get("phone")),
        "company": clean_str(payload.get("company")),
        "notes": clean_str(payload.get("notes")),
        "categories": normalize_categories(payload.get("categories")),
    }


def create_partner(s: Session, payload: dict, user: User) -> Partner:
    now = datetime.utcnow()
    partner = Partner(**_partner_values(payload), created_at=now, updated_at=now, created_by_user_id=user.id)
    s.add(partner)
    s.flush()
    record_event(
        s,
        actor=user,
        action="partner.create",
        entity_type="Partner",
        entity_id=str(partner.id),
        metadata={"full_name": partner.full_name, "categories": partner.categories},
    )
    return partner


def update_partner(s: Session, partner: Partner, payload: dict, user: User) -> Partner:
    changes = {}
    for attr, val in _partner_values(payload).items():
        old = getattr(partner, attr)
        if val != old:
            changes[attr] = {"old": old, "new": val}
            setattr(partner, attr, val)
    partner.updated_at = datetime.utcnow()
    if changes:
        record_event(
            s,
            actor=user,
            action="partner.edit",
            entity_type="Partner",
            entity_id=str(partner.id),
            metadata={"changes": changes},
        )
    return partner


def delete_partner(s: Session, partner: Partner, user: User) -> None:
    record_event(
        s,
        actor=user,
        action="partner.delete",
        entity_type="Partner",
        entity_id=str(partner.id),
        metadata={"full_name": partner.full_name},
    )
    s.delete(partner)


def search_partners(s: Session, search: str | None = None, category: str | None = None) -> list[Partner]:
    partners = s.query(Partner).order_by(Partner.full_name.asc(), Partner.id.asc()).all()
    # Category lives in a JSON list, so filtering happens in Python.
    if category:
        wanted = category.strip().lower()
        partners = [p for p in partners if wanted in {c.lower() for c in p.categories or []}]
    search = (search or "").strip().lower()
    if search:
        partners = [
            p
            for p in partners
            if search in p.full_name.lower()
            or search in (p.company or "").lower()
            or search in p.phone
            or any(search in c.lower() for c in p.categories or [])
        ]
    return partners


def all_categories(s: Session) -> list[str]:
    cats: list[str] = []
    for (value,) in s.query(Partner.categories).all():
        cats.extend(value or [])
    return sorted(normalize_categories(cats), key=str.lower)
