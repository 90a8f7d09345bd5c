from __future__ import annotations

from flask import Blueprint, abort, current_app, request

from app.polimaks.api import current_user, errors_response, json_payload
from app.polimaks.db import db_session
from app.polimaks.modules.backup.service import (
    export_snapshot,
    import_local_storage,
    list_snapshots,
    read_snapshot,
)
from app.polimaks.rbac import require_permission
from app.polimaks.storage import StorageError, storage_from_config

bp = Blueprint("backup", __name__)


@bp.post("/backup/import")
@require_permission("backup.edit")
def legacy_import():
    payload = json_payload()
    # Accept either the bare dump or {"dump": {...}}.
    dump = payload.get("dump") if isinstance(payload.get("dump"), dict) else payload
    if not dump:
        return errors_response(["Nothing to import."])
    s = db_session()
    report = import_local_storage(s, dump, current_user())
    s.commit()
    return report, 201


@bp.get("/backup/snapshots")
@require_permission("backup.view")
def snapshots_list():
    keys = list_snapshots(storage_from_config(current_app.config))
    return {"items": keys, "total": len(keys)}


@bp.post("/backup/snapshots")
@require_permission("backup.edit")
def snapshots_create():
    s = db_session()
    result = export_snapshot(s, storage_from_config(current_app.config), current_user())
    s.commit()
    return result, 201


@bp.get("/backup/snapshots/<path:name>")
@require_permission("backup.view")
def snapshots_detail(name: str):
    storage = storage_from_config(current_app.config)
    try:
        snapshot = read_snapshot(storage, name)
    except StorageError:
        abort(404)
    if request.args.get("summary") in ("1", "true"):
        return {"created_at": snapshot.get("created_at"), "counts": {k: len(v) for k, v in snapshot.get("tables", {}).items()}}
    return snapshot
