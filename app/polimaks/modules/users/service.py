"""
User accounts: admin management and self-service profile.
"""
from __future__ import annotations

from sqlalchemy import or_
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from app.polimaks.audit import record_event
from app.polimaks.models import Role, User
from app.polimaks.utils import raw_phone, validate_phone

MIN_PASSWORD_LENGTH = 8


def _password_errors(password: str) -> list[str]:
    if not password:
        return ["Password is required."]
    if len(password) < MIN_PASSWORD_LENGTH:
        return [f"Password must be at least {MIN_PASSWORD_LENGTH} characters."]
    return []


def _phone_taken(s: Session, phone: str, *, exclude_id: int | None = None) -> bool:
    q = s.query(User).filter(User.phone_number == phone)
    if exclude_id is not None:
        q = q.filter(User.id != exclude_id)
    return q.first() is not None


def list_users(s: Session, *, skip: int = 0, limit: int = 50, search: str | None = None) -> tuple[int, list[User]]:
    q = s.query(User)
    search = (search or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.fullname.ilike(like), User.phone_number.ilike(like)))
    total = q.count()
    users = q.order_by(User.created_at.desc(), User.id.desc()).offset(skip).limit(limit).all()
    return total, users


def validate_new_user_payload(s: Session, payload: dict) -> list[str]:
    errors = []
    err = validate_phone(payload.get("phone_number"))
    if err:
        errors.append(err)
    elif _phone_taken(s, raw_phone(payload.get("phone_number"))):
        errors.append("A user with this phone number already exists.")
    errors.extend(_password_errors(payload.get("password") or ""))
    return errors


def _roles_from_ids(s: Session, role_ids) -> list[Role]:
    ids = []
    for r in role_ids or []:
        try:
            ids.append(int(r))
        except (TypeError, ValueError):
            continue
    if not ids:
        return []
    return s.query(Role).filter(Role.id.in_(ids)).all()


def create_user(s: Session, payload: dict, actor: User) -> User:
    user = User(
        phone_number=raw_phone(payload.get("phone_number")),
        fullname=(payload.get("fullname") or "").strip(),
        password_hash=generate_password_hash(payload["password"]),
        is_active=True,
    )
    s.add(user)
    s.flush()
    for role in _roles_from_ids(s, payload.get("role_ids")):
        user.roles.append(role)
    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"phone_number": user.phone_number, "roles": [r.key for r in user.roles]},
    )
    return user


def update_user(s: Session, user: User, payload: dict, actor: User) -> User:
    """Admin edit: active flag, roles, name, premium. Admins cannot change their own account here."""
    if user.id == actor.id:
        raise ValueError("You cannot modify your own account from this page.")
    before = {"is_active": user.is_active, "roles": [r.key for r in user.roles], "is_premium": user.is_premium}
    if "is_active" in payload:
        user.is_active = bool(payload.get("is_active"))
    if "fullname" in payload:
        user.fullname = (payload.get("fullname") or "").strip()
    if "is_premium" in payload:
        user.is_premium = bool(payload.get("is_premium"))
    if "role_ids" in payload:
        user.roles.clear()
        for role in _roles_from_ids(s, payload.get("role_ids")):
            user.roles.append(role)
    after = {"is_active": user.is_active, "roles": [r.key for r in user.roles], "is_premium": user.is_premium}
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after},
    )
    return user


def reset_password(s: Session, user: User, password: str, actor: User) -> None:
    errors = _password_errors(password)
    if errors:
        raise ValueError(errors[0])
    user.password_hash = generate_password_hash(password)
    record_event(
        s,
        actor=actor,
        action="user.password_reset",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"target_phone": user.phone_number},
    )


def update_profile(s: Session, user: User, payload: dict) -> list[str]:
    """
    Self-service edit of name and phone. A new password needs the current one.
    Returns validation errors; nothing is changed when there are any.
    """
    errors: list[str] = []
    phone = user.phone_number
    if "phone_number" in payload:
        err = validate_phone(payload.get("phone_number"))
        if err:
            errors.append(err)
        else:
            phone = raw_phone(payload.get("phone_number"))
            if _phone_taken(s, phone, exclude_id=user.id):
                errors.append("A user with this phone number already exists.")
    new_password = payload.get("password") or ""
    if new_password:
        if not check_password_hash(user.password_hash, payload.get("current_password") or ""):
            errors.append("Current password is incorrect.")
        errors.extend(_password_errors(new_password))
    if errors:
        return errors

    changes = {}
    if "fullname" in payload:
        fullname = (payload.get("fullname") or "").strip()
        if fullname != user.fullname:
            changes["fullname"] = {"old": user.fullname, "new": fullname}
            user.fullname = fullname
    if phone != user.phone_number:
        changes["phone_number"] = {"old": user.phone_number, "new": phone}
        user.phone_number = phone
    if new_password:
        user.password_hash = generate_password_hash(new_password)
        changes["password"] = "changed"
    if changes:
        record_event(
            s,
            actor=user,
            action="user.update_profile",
            entity_type="User",
            entity_id=str(user.id),
            metadata={"changes": changes},
        )
    return []
