"""
Small helpers shared by the JSON blueprints.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, TypeVar

from flask import abort, g, request
from sqlalchemy.orm import Session

from app.polimaks.models import User

T = TypeVar("T")


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def json_payload() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="JSON object expected.")
    return data


def errors_response(errors: list[str], status: int = 400):
    return {"errors": errors}, status


def get_or_404(s: Session, model: type[T], obj_id: int) -> T:
    obj = s.get(model, obj_id)
    if obj is None:
        abort(404)
    return obj


def iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def pagination_args(default_limit: int = 50, max_limit: int = 500) -> tuple[int, int]:
    try:
        skip = max(0, int(request.args.get("skip", 0)))
    except ValueError:
        skip = 0
    try:
        limit = int(request.args.get("limit", default_limit))
    except ValueError:
        limit = default_limit
    return skip, max(1, min(limit, max_limit))
