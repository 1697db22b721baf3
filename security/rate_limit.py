import logging
import math
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import NamedTuple, Optional

from flask import current_app, g, request

from security.errors import RateLimitExceeded
from security.store import InMemoryStore
from utils.audit import log_event

logger = logging.getLogger(__name__)


class RateLimitPolicy(NamedTuple):
    max_attempts: int
    window_ms: int


class RateLimitResult(NamedTuple):
    allowed: bool
    retry_after_seconds: Optional[int] = None


@dataclass
class RateLimitEntry:
    count: int
    reset_time: float
    blocked: bool = False


DEFAULT_POLICIES = {
    "login": RateLimitPolicy(5, 15 * 60 * 1000),
    "register": RateLimitPolicy(3, 60 * 60 * 1000),
    "refresh": RateLimitPolicy(10, 60 * 60 * 1000),
    "api": RateLimitPolicy(100, 60 * 60 * 1000),
}


def policies_from_config(raw: dict) -> dict:
    policies = dict(DEFAULT_POLICIES)
    for action, values in (raw or {}).items():
        policies[action] = RateLimitPolicy(int(values["max_attempts"]), int(values["window_ms"]))
    return policies


class RateLimiter:
    """
    Fixed-window counters per (action, ip, identifier).

    Crossing a window boundary starts a new window at count 1, so a client
    can get up to 2 x max_attempts through around the boundary.
    """

    def __init__(self, policies: dict = None, store=None, clock=time.time):
        self.policies = dict(policies or DEFAULT_POLICIES)
        self._store = store if store is not None else InMemoryStore()
        self._clock = clock

    @staticmethod
    def _key(action: str, ip: str, identifier: str) -> str:
        return f"{action}:{ip}:{identifier}"

    def _policy(self, action: str) -> RateLimitPolicy:
        try:
            return self.policies[action]
        except KeyError:
            raise ValueError(f"Unknown rate limit action: {action}")

    def check(self, action: str, ip: str, identifier: str) -> RateLimitResult:
        policy = self._policy(action)
        key = self._key(action, ip, identifier)
        now = self._clock()
        entry = self._store.get(key)

        if entry is None or now > entry.reset_time:
            self._store.set(key, RateLimitEntry(count=1, reset_time=now + policy.window_ms / 1000.0))
            return RateLimitResult(True)

        entry.count += 1
        if entry.count > policy.max_attempts:
            entry.blocked = True
        self._store.set(key, entry)

        if entry.blocked:
            retry_after = max(int(math.ceil(entry.reset_time - now)), 1)
            return RateLimitResult(False, retry_after)
        return RateLimitResult(True)

    def reset(self, ip: str, identifier: str, action: str) -> None:
        self._store.delete(self._key(action, ip, identifier))

    def status(self, ip: str, identifier: str, action: str) -> dict:
        policy = self._policy(action)
        entry = self._store.get(self._key(action, ip, identifier))
        if entry is None:
            return {
                "attempts": 0,
                "max_attempts": policy.max_attempts,
                "reset_time": self._clock() + policy.window_ms / 1000.0,
                "blocked": False,
            }
        return {
            "attempts": entry.count,
            "max_attempts": policy.max_attempts,
            "reset_time": entry.reset_time,
            "blocked": entry.blocked,
        }

    def sweep(self) -> int:
        now = self._clock()
        count = 0
        for key, entry in self._store.items():
            if now > entry.reset_time and self._store.delete(key):
                count += 1
        return count

    def __len__(self) -> int:
        return len(self._store)


# --- Flask glue -------------------------------------------------------------

def client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.remote_addr or "unknown"


def request_identifier() -> str:
    body = getattr(g, "body", None) or {}
    query = getattr(g, "query", None) or {}
    identifier = body.get("email") or body.get("username") or query.get("email")
    if not isinstance(identifier, str) or not identifier:
        return "anonymous"
    return identifier.strip().lower()


def rate_limited(action: str):
    """
    Usage: @rate_limited("login")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            limiter = current_app.extensions["security"].rate_limiter
            if random.random() < current_app.config.get("SWEEP_PROBABILITY", 0.01):
                limiter.sweep()

            ctx = getattr(g, "security", None)
            ip = ctx.ip if ctx is not None else client_ip()
            identifier = request_identifier()
            # Later handlers rewrite g.body, so reset must reuse this exact key
            g.rate_limit_key = (ip, identifier)

            result = limiter.check(action, ip, identifier)
            if not result.allowed:
                logger.warning("Rate limit hit: action=%s ip=%s identifier=%s", action, ip, identifier)
                log_event("RATE_LIMIT", metadata={"action": action, "identifier": identifier,
                                                  "retry_after": result.retry_after_seconds})
                raise RateLimitExceeded(result.retry_after_seconds,
                                        reason=f"{action} limit hit for {ip}/{identifier}")
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def reset_rate_limit(action: str) -> None:
    """Clear the counter that rate_limited(action) charged for this request."""
    key = getattr(g, "rate_limit_key", None)
    if key is None:
        return
    ip, identifier = key
    current_app.extensions["security"].rate_limiter.reset(ip, identifier, action)
