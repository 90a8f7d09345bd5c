from __future__ import annotations

from flask import Blueprint, request

from app.polimaks.api import current_user, errors_response, get_or_404, iso, json_payload, pagination_args
from app.polimaks.db import db_session
from app.polimaks.models import Role, User
from app.polimaks.modules.users.service import (
    create_user,
    list_users,
    reset_password,
    update_profile,
    update_user,
    validate_new_user_payload,
)
from app.polimaks.rbac import require_login, require_permission, user_permission_keys

bp = Blueprint("users", __name__)
# Mounted at the root: the dashboard calls `users/me` directly.
me_bp = Blueprint("users_me", __name__)


def serialize_user(u: User) -> dict:
    return {
        "id": u.id,
        "phone_number": u.phone_number,
        "fullname": u.fullname,
        "created_at": iso(u.created_at),
        "is_premium": u.is_premium,
        "premium_expires_at": iso(u.premium_expires_at),
        "is_active": u.is_active,
        "roles": [r.key for r in u.roles],
    }


@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    skip, limit = pagination_args()
    total, users = list_users(s, skip=skip, limit=limit, search=request.args.get("q"))
    return {"total": total, "skip": skip, "limit": limit, "items": [serialize_user(u) for u in users]}


@bp.post("/users")
@require_permission("users.edit")
def users_create():
    s = db_session()
    payload = json_payload()
    errors = validate_new_user_payload(s, payload)
    if errors:
        status = 409 if errors == ["A user with this phone number already exists."] else 400
        return errors_response(errors, status)
    user = create_user(s, payload, current_user())
    s.commit()
    return serialize_user(user), 201


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def users_detail(user_id: int):
    s = db_session()
    return serialize_user(get_or_404(s, User, user_id))


@bp.put("/users/<int:user_id>")
@require_permission("users.edit")
def users_update(user_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id)
    try:
        update_user(s, user, json_payload(), current_user())
    except ValueError as e:
        return errors_response([str(e)], 409)
    s.commit()
    return serialize_user(user)


@bp.post("/users/<int:user_id>/reset-password")
@require_permission("users.edit")
def users_reset_password(user_id: int):
    s = db_session()
    user = get_or_404(s, User, user_id)
    try:
        reset_password(s, user, json_payload().get("password") or "", current_user())
    except ValueError as e:
        return errors_response([str(e)])
    s.commit()
    return {"ok": True}


@bp.get("/roles")
@require_permission("users.view")
def roles_list():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    return {
        "items": [
            {"id": r.id, "key": r.key, "name": r.name, "permissions": sorted(p.key for p in r.permissions)}
            for r in roles
        ]
    }


@me_bp.get("/users/me")
@require_login
def me():
    user = current_user()
    return {**serialize_user(user), "permissions": user_permission_keys(user)}


@me_bp.put("/users/me")
@require_login
def me_update():
    s = db_session()
    user = current_user()
    errors = update_profile(s, user, json_payload())
    if errors:
        return errors_response(errors)
    s.commit()
    return {**serialize_user(user), "permissions": user_permission_keys(user)}
