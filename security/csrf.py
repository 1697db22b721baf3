import logging
import random
import secrets
import time
from dataclasses import dataclass
from functools import wraps

from flask import current_app, g, request, session as cookie_session

from security.errors import CsrfError
from security.store import InMemoryStore
from utils.audit import log_event

logger = logging.getLogger(__name__)

SAFE_METHODS = ("GET", "HEAD", "OPTIONS")
ANON_SESSION_KEY = "csrf_sid"


@dataclass
class CsrfToken:
    session_id: str
    expires: float


class CsrfGuard:
    """
    Anti-forgery tokens bound to a session id. Tokens may be reused until
    they expire; they are not tied to a method or path.
    """

    def __init__(self, store=None, ttl_seconds: int = 3600, clock=time.time):
        self._store = store if store is not None else InMemoryStore()
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, session_id: str) -> str:
        token = secrets.token_hex(32)
        self._store.set(token, CsrfToken(session_id=session_id, expires=self._clock() + self.ttl_seconds))
        return token

    def validate(self, token: str, session_id: str) -> bool:
        if not token or not session_id:
            return False
        stored = self._store.get(token)
        if stored is None:
            return False
        if self._clock() > stored.expires:
            self._store.delete(token)
            return False
        return secrets.compare_digest(stored.session_id, session_id)

    def sweep(self) -> int:
        now = self._clock()
        count = 0
        for token, stored in self._store.items():
            if now > stored.expires and self._store.delete(token):
                count += 1
        return count

    def __len__(self) -> int:
        return len(self._store)


# --- Flask glue -------------------------------------------------------------

def current_csrf_session_id(create: bool = False):
    """
    The id CSRF tokens are bound to: the auth session when the request
    carries a valid bearer token, else an anonymous id in the signed cookie.
    """
    auth = getattr(g, "auth", None)
    if auth:
        return auth["sessionId"]

    sid = cookie_session.get(ANON_SESSION_KEY)
    if sid is None and create:
        sid = secrets.token_hex(16)
        cookie_session[ANON_SESSION_KEY] = sid
    return sid


def _submitted_token():
    header = current_app.config.get("CSRF_HEADER", "X-CSRF-Token")
    field = current_app.config.get("CSRF_BODY_FIELD", "csrfToken")
    token = request.headers.get(header)
    if not token:
        body = getattr(g, "body", None) or {}
        token = body.get(field)
    return token if isinstance(token, str) and token else None


def csrf_protected(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if request.method in SAFE_METHODS:
            return fn(*args, **kwargs)

        guard = current_app.extensions["security"].csrf
        if random.random() < current_app.config.get("SWEEP_PROBABILITY", 0.01):
            guard.sweep()

        token = _submitted_token()
        if token is None:
            log_event("CSRF_MISSING", metadata={"path": request.path})
            raise CsrfError(CsrfError.MISSING)

        if not guard.validate(token, current_csrf_session_id()):
            logger.warning("CSRF validation failed for %s %s", request.method, request.path)
            log_event("CSRF_INVALID", metadata={"path": request.path})
            raise CsrfError(CsrfError.INVALID)

        return fn(*args, **kwargs)
    return wrapper
