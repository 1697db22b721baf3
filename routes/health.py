import time
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify

health_bp = Blueprint("health", __name__, url_prefix="/api")

_STARTED_AT = time.monotonic()


@health_bp.get("/health")
def health():
    return jsonify(
        status="OK",
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(time.monotonic() - _STARTED_AT, 3),
        version=current_app.config.get("APP_VERSION", "dev"),
    ), 200
