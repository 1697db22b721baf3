import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # Base secret for per-session JWT keys. No default: the app refuses to start without it.
    JWT_SECRET = os.getenv("JWT_SECRET")

    # SQLite database file stored next to app.py as virtual_hospital.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "virtual_hospital.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Tokens
    JWT_ISSUER = "virtual-hospital"
    ACCESS_TOKEN_TTL_SECONDS = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(15 * 60)))
    REFRESH_TOKEN_TTL_SECONDS = int(os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(7 * 24 * 60 * 60)))
    ENFORCE_TOKEN_VERSION = _env_bool("ENFORCE_TOKEN_VERSION", "true")

    # Sessions idle for 24 hours are swept
    SESSION_IDLE_TIMEOUT_SECONDS = int(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", str(24 * 60 * 60)))

    # Background sweep every hour (0 disables the thread)
    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
    # Chance per guarded request of an inline sweep
    SWEEP_PROBABILITY = 0.01

    # CSRF
    CSRF_TOKEN_TTL_SECONDS = 60 * 60
    CSRF_HEADER = "X-CSRF-Token"
    CSRF_BODY_FIELD = "csrfToken"

    # Per-action rate limits
    RATE_LIMITS = {
        "login": {"max_attempts": 5, "window_ms": 15 * 60 * 1000},
        "register": {"max_attempts": 3, "window_ms": 60 * 60 * 1000},
        "refresh": {"max_attempts": 10, "window_ms": 60 * 60 * 1000},
        "api": {"max_attempts": 100, "window_ms": 60 * 60 * 1000},
    }

    # Password hashing / policy
    BCRYPT_ROUNDS = 12
    PASSWORD_MIN_LEN = 8
    PASSWORD_MAX_LEN = 128
    PASSWORD_REQUIRE_UPPER = True
    PASSWORD_REQUIRE_LOWER = True
    PASSWORD_REQUIRE_DIGIT = True
    PASSWORD_REQUIRE_SYMBOL = True

    # Session/cookie security defaults (Flask cookie holds only the anonymous CSRF id)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Strict"
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "false")  # set True when using HTTPS

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    APP_VERSION = "2.0.0-secure"

    # Basic app settings
    DEBUG = False
