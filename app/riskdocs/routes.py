from flask import Blueprint, g, jsonify

from app.riskdocs.security import ensure_csrf_token

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    """Who am I + the CSRF token API clients must echo in X-CSRF-Token."""
    user = getattr(g, "current_user", None)
    return jsonify(
        {
            "service": "riskdocs",
            "user": {"id": user.id, "email": user.email} if user else None,
            "csrf_token": ensure_csrf_token(),
        }
    )


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
