from functools import wraps

from flask import current_app, g, request

from models import db
from models.user import User
from security.errors import AuthenticationError
from security.tokens import extract_bearer_token


def load_current_user():
    """
    Resolve the bearer token, if any, into g.auth (claims) and g.user.
    A bad token leaves both as None and keeps the cause in g.auth_error
    for login_required to raise.
    """
    g.auth = None
    g.user = None
    g.auth_error = None

    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        return

    tokens = current_app.extensions["security"].tokens
    try:
        claims = tokens.verify(token)
    except AuthenticationError as exc:
        current_app.logger.info("Token rejected (request_id=%s): %s", g.security.request_id, exc.reason)
        g.auth_error = exc
        return

    user = db.session.get(User, int(claims["userId"])) if claims["userId"].isdigit() else None
    if user is None:
        g.auth_error = AuthenticationError("user for token no longer exists")
        return

    g.auth = claims
    g.user = user


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "auth", None) is None:
            err = getattr(g, "auth_error", None)
            if err is not None:
                raise err
            raise AuthenticationError("missing bearer token", public_message="Access token is required")
        return fn(*args, **kwargs)
    return wrapper
