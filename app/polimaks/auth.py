from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, request, session
from werkzeug.security import check_password_hash

from app.polimaks.audit import record_event
from app.polimaks.db import db_session
from app.polimaks.models import User
from app.polimaks.rbac import user_permission_keys
from app.polimaks.security import ensure_csrf_token
from app.polimaks.utils import raw_phone

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    for key in list(_login_attempts):
        recent = [t for t in _login_attempts[key] if t > cutoff]
        if recent:
            _login_attempts[key] = recent
        else:
            del _login_attempts[key]
    return len(_login_attempts.get(ip, ())) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def serialize_session_user(user: User) -> dict:
    return {
        "id": user.id,
        "phone_number": user.phone_number,
        "fullname": user.fullname,
        "roles": [r.key for r in user.roles],
        "permissions": user_permission_keys(user),
    }


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    if request.path.startswith(("/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None
        return

    if not user or not user.is_active:
        session.pop("user_id", None)
        g.current_user = None
        return
    g.current_user = user


@bp.get("/csrf")
def csrf_token():
    return {"csrf_token": ensure_csrf_token()}


@bp.get("/session")
def session_get():
    user = getattr(g, "current_user", None)
    if not user:
        return {"authenticated": False, "user": None}
    return {"authenticated": True, "user": serialize_session_user(user)}


@bp.post("/login")
def login_post():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = request.form
    phone = raw_phone(data.get("phone_number") or data.get("phone"))
    password = data.get("password") or ""
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return {"error": "Too many login attempts. Please wait 5 minutes."}, 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.phone_number == phone).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=phone or None,
                reason="Invalid credentials",
            )
            s.commit()
            return {"error": "Invalid credentials."}, 401

        session.clear()
        session["user_id"] = user.id
        session.permanent = True
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return {"user": serialize_session_user(user), "csrf_token": ensure_csrf_token()}
    except Exception:
        current_app.logger.exception("Login POST crashed (phone=%s request_id=%s)", phone, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.clear()
    return {"ok": True}
