from datetime import datetime, timezone

from flask import Blueprint, current_app, g, jsonify

from models import db
from models.user import User
from security.csrf import csrf_protected, current_csrf_session_id
from security.errors import AuthenticationError, InvalidRefreshToken
from security.password import hash_password, verify_password
from security.rate_limit import rate_limited, reset_rate_limit
from security.services import get_services
from security.validation import RULES, validate_body
from utils.audit import log_event
from utils.auth_context import login_required


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _token_response(user: User, message: str, status: int):
    services = get_services()
    pair = services.tokens.issue(user.token_claims(), device_fingerprint=g.security.device_fingerprint)
    # New session, so the client needs a CSRF token bound to it
    csrf_token = services.csrf.issue(pair.session_id)
    return jsonify(
        success=True,
        message=message,
        token=pair.access_token,
        refreshToken=pair.refresh_token,
        csrfToken=csrf_token,
        user=user.to_public(),
    ), status


@auth_bp.get("/csrf-token")
def csrf_token():
    token = get_services().csrf.issue(current_csrf_session_id(create=True))
    return jsonify(success=True, csrfToken=token), 200


@auth_bp.post("/register")
@rate_limited("register")
@validate_body(RULES["register"])
@csrf_protected
def register():
    data = g.body
    email = data["email"].strip().lower()

    if User.query.filter_by(email=email).first():
        log_event("REGISTER_FAIL_EMAIL_EXISTS", metadata={"email": email})
        return jsonify(success=False, message="User with this email already exists"), 400

    user = User(
        email=email,
        username=data["username"],
        password_hash=hash_password(data["password"], rounds=current_app.config.get("BCRYPT_ROUNDS", 12)),
        provider="local",
    )
    db.session.add(user)
    db.session.commit()

    reset_rate_limit("register")
    log_event("REGISTER_SUCCESS", user_id=user.id)
    return _token_response(user, "User registered successfully", 201)


@auth_bp.post("/login")
@rate_limited("login")
@validate_body(RULES["login"])
@csrf_protected
def login():
    data = g.body
    email = data["email"].strip().lower()

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(data["password"], user.password_hash):
        log_event("LOGIN_FAIL", user_id=user.id if user else None, metadata={"email": email})
        return jsonify(success=False, message="Invalid credentials"), 401

    reset_rate_limit("login")
    log_event("LOGIN_SUCCESS", user_id=user.id)
    return _token_response(user, "Login successful", 200)


@auth_bp.post("/refresh")
@rate_limited("refresh")
def refresh():
    refresh_token = g.body.get("refreshToken")
    if not refresh_token or not isinstance(refresh_token, str):
        return jsonify(success=False, message="Refresh token is required"), 400

    try:
        pair = get_services().tokens.refresh(refresh_token, g.security.device_fingerprint)
    except InvalidRefreshToken as exc:
        current_app.logger.info("Refresh rejected (request_id=%s): %s", g.security.request_id, exc.reason)
        log_event("REFRESH_FAIL", metadata={"reason": exc.reason})
        raise

    return jsonify(
        success=True,
        message="Token refreshed successfully",
        token=pair.access_token,
        refreshToken=pair.refresh_token,
    ), 200


@auth_bp.post("/logout")
@login_required
@csrf_protected
def logout():
    get_services().tokens.invalidate(g.auth["sessionId"])
    log_event("LOGOUT", user_id=g.user.id)
    return jsonify(success=True, message="Logged out successfully"), 200


@auth_bp.post("/logout-all")
@login_required
@csrf_protected
def logout_all():
    count = get_services().tokens.invalidate_all(g.auth["userId"])
    log_event("LOGOUT_ALL", user_id=g.user.id, metadata={"revoked_sessions": count})
    return jsonify(success=True, message=f"Logged out from {count} sessions", revokedSessions=count), 200


@auth_bp.get("/sessions")
@login_required
@rate_limited("api")
def sessions():
    rows = get_services().tokens.list_sessions(g.auth["userId"])
    current = g.auth["sessionId"]
    return jsonify(
        success=True,
        sessions=[
            {
                "sessionId": row["sessionId"],
                "lastActivity": datetime.fromtimestamp(row["lastActivity"], tz=timezone.utc).isoformat(),
                "deviceFingerprint": row["deviceFingerprint"],
                "current": row["sessionId"] == current,
            }
            for row in rows
        ],
    ), 200


@auth_bp.errorhandler(AuthenticationError)
def _auth_error(err):
    # Route-level envelope: same shape as the app handler, plus a login hint
    body = err.to_dict()
    body["requestId"] = g.security.request_id
    body["reauthenticate"] = True
    return jsonify(body), err.status_code
