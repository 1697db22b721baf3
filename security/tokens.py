"""
Per-session JWT issuance and verification.

Every session signs with its own key, derived on demand as
sha256("<base secret>:<user id>:<session id>"). The key is never stored.
A token is only a reference into a live session: its claims are not
trusted until the session it names has been found in the registry.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

import jwt

from security.errors import (
    ConfigurationError,
    DeviceMismatch,
    InvalidRefreshToken,
    InvalidToken,
)
from security.session import SessionRegistry

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
MIN_SECRET_BYTES = 32


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str
    session_id: str


def generate_device_fingerprint(user_agent: str = None, ip: str = None) -> str:
    raw = f"{user_agent or 'unknown'}:{ip or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return auth_header.strip() or None


def _as_timedelta(value) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=int(value))


class TokenService:
    def __init__(
        self,
        base_secret: str,
        registry: SessionRegistry,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        issuer: str = "virtual-hospital",
        enforce_version: bool = True,
        idle_timeout=None,
    ):
        if not base_secret:
            raise ConfigurationError("JWT_SECRET is not configured")
        if len(base_secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigurationError(f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes")

        self._base_secret = base_secret
        self.registry = registry
        self.access_ttl = _as_timedelta(access_ttl)
        self.refresh_ttl = _as_timedelta(refresh_ttl)
        self.issuer = issuer
        self.enforce_version = enforce_version
        # Seconds; None leaves idle expiry to the periodic sweep alone
        self.idle_timeout = idle_timeout

    def derive_secret(self, user_id: str, session_id: str) -> str:
        raw = f"{self._base_secret}:{user_id}:{session_id}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    # --- signing ---------------------------------------------------------

    def _sign_pair(self, sess, expires_in=None) -> TokenPair:
        now = datetime.now(timezone.utc)
        secret = self.derive_secret(sess.user_id, sess.session_id)
        ttl = _as_timedelta(expires_in) if expires_in is not None else self.access_ttl

        access_claims = {
            "userId": sess.user_id,
            "email": sess.email,
            "username": sess.username,
            "provider": sess.provider,
            "sessionId": sess.session_id,
            "tokenVersion": sess.token_version,
            "type": "access",
            "iat": now,
            "exp": now + ttl,
            "iss": self.issuer,
            "aud": sess.user_id,
        }
        refresh_claims = {
            "userId": sess.user_id,
            "sessionId": sess.session_id,
            "tokenVersion": sess.token_version,
            "type": "refresh",
            "iat": now,
            "exp": now + self.refresh_ttl,
            "iss": self.issuer,
        }
        return TokenPair(
            access_token=jwt.encode(access_claims, secret, algorithm=ALGORITHM),
            refresh_token=jwt.encode(refresh_claims, secret, algorithm=ALGORITHM),
            session_id=sess.session_id,
        )

    def issue(self, user_claims: dict, expires_in=None, device_fingerprint: str = None) -> TokenPair:
        """
        Open a session for an already-authenticated user and sign its tokens.

        ``user_claims`` needs ``id``; ``email``, ``username`` and ``provider``
        are copied into the session and every access token minted from it.
        """
        user_id = user_claims.get("id")
        if user_id is None or str(user_id) == "":
            raise ValueError("user_claims must include an id")

        session_id = self.registry.create(
            str(user_id),
            device_fingerprint=device_fingerprint,
            email=user_claims.get("email"),
            username=user_claims.get("username") or "",
            provider=user_claims.get("provider") or "local",
        )
        return self._sign_pair(self.registry.get(session_id), expires_in=expires_in)

    # --- verification ----------------------------------------------------

    def _live_session(self, session_id: str):
        sess = self.registry.get(session_id)
        if sess is not None and self.idle_timeout and self.registry.is_idle(sess, self.idle_timeout):
            # Idle past the timeout but not yet swept
            self.registry.delete(session_id)
            return None
        return sess

    @staticmethod
    def _peek(token: str, error_cls) -> dict:
        # Unverified read, only to learn which session's key to check against
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise error_cls(f"malformed token: {exc}")
        if not isinstance(claims, dict) or not claims.get("sessionId") or not claims.get("userId"):
            raise error_cls("invalid token structure")
        return claims

    def verify(self, access_token: str) -> dict:
        if not access_token:
            raise InvalidToken("no token")

        peeked = self._peek(access_token, InvalidToken)
        sess = self._live_session(peeked["sessionId"])
        if sess is None or sess.user_id != str(peeked["userId"]):
            raise InvalidToken("session not found or invalid")

        try:
            claims = jwt.decode(
                access_token,
                self.derive_secret(sess.user_id, sess.session_id),
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                audience=sess.user_id,
                options={"require": ["exp", "iat"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidToken(f"token verification failed: {exc}")

        if claims.get("type") != "access":
            raise InvalidToken("not an access token")
        if self.enforce_version and claims.get("tokenVersion") != sess.token_version:
            raise InvalidToken("stale token version")

        self.registry.touch(sess.session_id)
        return claims

    def refresh(self, refresh_token: str, device_fingerprint: str = None) -> TokenPair:
        if not refresh_token:
            raise InvalidRefreshToken("no refresh token")

        peeked = self._peek(refresh_token, InvalidRefreshToken)
        if peeked.get("type") != "refresh":
            raise InvalidRefreshToken("not a refresh token")

        sess = self._live_session(peeked["sessionId"])
        if sess is None:
            raise InvalidRefreshToken("session expired")
        if sess.user_id != str(peeked["userId"]):
            raise InvalidRefreshToken("session does not belong to token subject")
        if device_fingerprint and sess.device_fingerprint and device_fingerprint != sess.device_fingerprint:
            raise DeviceMismatch("device fingerprint mismatch")

        try:
            claims = jwt.decode(
                refresh_token,
                self.derive_secret(sess.user_id, sess.session_id),
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"require": ["exp", "iat"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidRefreshToken(f"refresh token verification failed: {exc}")

        if self.enforce_version and claims.get("tokenVersion") != sess.token_version:
            raise InvalidRefreshToken("stale refresh token")

        self.registry.bump_version(sess.session_id)
        sess = self.registry.get(sess.session_id)
        if sess is None:
            raise InvalidRefreshToken("session ended during refresh")
        pair = self._sign_pair(sess)
        logger.debug("Rotated tokens for session %s", sess.session_id[:8])
        return pair

    # --- session management ----------------------------------------------

    def invalidate(self, session_id: str) -> bool:
        return self.registry.delete(session_id)

    def invalidate_all(self, user_id: str) -> int:
        return self.registry.delete_all_for_user(str(user_id))

    def list_sessions(self, user_id: str) -> list:
        return [
            {
                "sessionId": sess.session_id,
                "lastActivity": sess.last_activity,
                "deviceFingerprint": sess.device_fingerprint,
            }
            for sess in self.registry.list_for_user(str(user_id))
        ]
