import time

from flask import current_app

from security.csrf import CsrfGuard
from security.rate_limit import RateLimiter, policies_from_config
from security.session import SessionRegistry
from security.store import InMemoryStore
from security.tokens import TokenService


class SecurityServices:
    """
    The per-process security state: one registry, token service, rate
    limiter and CSRF guard, each over its own store. Built once in
    create_app and reached through get_services().
    """

    def __init__(self, config, store_factory=InMemoryStore, clock=time.time):
        self.sessions = SessionRegistry(store_factory(), clock=clock)
        self.tokens = TokenService(
            config.get("JWT_SECRET"),
            self.sessions,
            access_ttl=config.get("ACCESS_TOKEN_TTL_SECONDS", 15 * 60),
            refresh_ttl=config.get("REFRESH_TOKEN_TTL_SECONDS", 7 * 24 * 60 * 60),
            issuer=config.get("JWT_ISSUER", "virtual-hospital"),
            enforce_version=config.get("ENFORCE_TOKEN_VERSION", True),
            idle_timeout=config.get("SESSION_IDLE_TIMEOUT_SECONDS"),
        )
        self.rate_limiter = RateLimiter(
            policies_from_config(config.get("RATE_LIMITS")),
            store_factory(),
            clock=clock,
        )
        self.csrf = CsrfGuard(
            store_factory(),
            ttl_seconds=config.get("CSRF_TOKEN_TTL_SECONDS", 3600),
            clock=clock,
        )


def init_security(app, store_factory=InMemoryStore, clock=time.time) -> SecurityServices:
    services = SecurityServices(app.config, store_factory=store_factory, clock=clock)
    app.extensions["security"] = services
    return services


def get_services() -> SecurityServices:
    return current_app.extensions["security"]
