from flask import Blueprint

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "polimaks", "api": "/admin"}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for load-balancer probes. No DB access.
    """
    return "ok", 200
