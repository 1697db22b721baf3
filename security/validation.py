"""
Declarative per-field validation for JSON request bodies.

A rule set maps field name -> rule dict with any of:
    required, type (string|email|password|username|url|uuid),
    min_length, max_length, pattern, sanitize
"""
import html
import re
import uuid
from functools import wraps
from typing import List, Tuple
from urllib.parse import urlparse

from flask import current_app, g, has_app_context

from security.errors import ValidationError

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_USERNAME = re.compile(r"^[a-zA-Z0-9_]{3,20}$")

# Overridable per app through config keys of the same name
PASSWORD_POLICY = {
    "PASSWORD_MIN_LEN": 8,
    "PASSWORD_MAX_LEN": 128,
    "PASSWORD_REQUIRE_UPPER": True,
    "PASSWORD_REQUIRE_LOWER": True,
    "PASSWORD_REQUIRE_DIGIT": True,
    "PASSWORD_REQUIRE_SYMBOL": True,
}

_PASSWORD_CLASSES = (
    ("PASSWORD_REQUIRE_UPPER", re.compile(r"[A-Z]"), "uppercase letter"),
    ("PASSWORD_REQUIRE_LOWER", re.compile(r"[a-z]"), "lowercase letter"),
    ("PASSWORD_REQUIRE_DIGIT", re.compile(r"\d"), "number"),
    ("PASSWORD_REQUIRE_SYMBOL", re.compile(r"[^A-Za-z0-9]"), "special character"),
)

FIELD_TYPES = ("string", "email", "password", "username", "url", "uuid")

RULES = {
    "register": {
        "username": {"required": True, "type": "username", "sanitize": True},
        "email": {"required": True, "type": "email", "max_length": 255, "sanitize": True},
        "password": {"required": True, "type": "password"},
    },
    "login": {
        "email": {"required": True, "type": "email", "max_length": 255, "sanitize": True},
        "password": {"required": True, "type": "string", "min_length": 1},
    },
}

_STRIP = [
    (re.compile(r"[<>]"), ""),
    (re.compile(r"javascript:", re.I), ""),
    (re.compile(r"vbscript:", re.I), ""),
    (re.compile(r"on\w+\s*=", re.I), ""),
    (re.compile(r"data:(?!image/)", re.I), ""),
    (re.compile(r"/\*[\s\S]*?\*/"), ""),
    (re.compile(r"--.*$", re.M), ""),
    (re.compile(r";\s*(drop|delete|insert|update|create|alter|truncate)", re.I), ""),
]


def sanitize_string(value: str) -> str:
    cleaned = html.escape(value, quote=True)
    for pattern, repl in _STRIP:
        cleaned = pattern.sub(repl, cleaned)
    return cleaned.strip()


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value if "://" in value else "http://" + value)
    return parsed.scheme in ("http", "https") and "." in (parsed.hostname or "")


def _is_valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _policy(name: str):
    if has_app_context():
        return current_app.config.get(name, PASSWORD_POLICY[name])
    return PASSWORD_POLICY[name]


def password_errors(pw: str, field_name: str = "Password") -> List[str]:
    errors: List[str] = []
    min_len = int(_policy("PASSWORD_MIN_LEN"))
    max_len = int(_policy("PASSWORD_MAX_LEN"))

    if len(pw) < min_len:
        errors.append(f"{field_name} must be at least {min_len} characters")
    if len(pw) > max_len:
        errors.append(f"{field_name} must be at most {max_len} characters")
    for key, char_class, label in _PASSWORD_CLASSES:
        if _policy(key) and not char_class.search(pw):
            errors.append(f"{field_name} must include at least one {label}")
    return errors


def _empty(value) -> bool:
    return value is None or value == ""


def validate_field(value, rules: dict, field_name: str) -> Tuple[bool, object, List[str]]:
    """
    Returns (valid, sanitized_value, errors).

    Sanitizing happens first and every check runs on the sanitized text,
    so the value handed back is always one that passed the checks.
    """
    if _empty(value):
        if rules.get("required"):
            return False, None, [f"{field_name} is required"]
        return True, value, []

    if rules.get("sanitize") and isinstance(value, str):
        value = sanitize_string(value)
        if value == "":
            return False, None, [f"{field_name} is invalid after sanitization"]

    text = value if isinstance(value, str) else str(value)

    min_length = rules.get("min_length")
    max_length = rules.get("max_length")
    if min_length and len(text) < min_length:
        return False, None, [f"{field_name} must be at least {min_length} characters"]
    if max_length and len(text) > max_length:
        return False, None, [f"{field_name} must not exceed {max_length} characters"]

    kind = rules.get("type", "string")
    if kind not in FIELD_TYPES:
        raise ValueError(f"Unknown field type: {kind}")

    if kind == "email" and not _EMAIL.match(text):
        return False, None, [f"{field_name} must be a valid email address"]
    if kind == "password":
        errors = password_errors(text, field_name)
        if errors:
            return False, None, errors
    if kind == "username" and not _USERNAME.match(text):
        return False, None, [f"{field_name} must be 3-20 characters, alphanumeric and underscore only"]
    if kind == "url" and not _is_valid_url(text):
        return False, None, [f"{field_name} must be a valid URL"]
    if kind == "uuid" and not _is_valid_uuid(text):
        return False, None, [f"{field_name} must be a valid UUID"]

    pattern = rules.get("pattern")
    if pattern is not None and not re.search(pattern, text):
        return False, None, [f"{field_name} format is invalid"]

    return True, value, []


def validate_fields(data: dict, rules: dict) -> Tuple[dict, List[str]]:
    clean = {}
    errors: List[str] = []
    data = data or {}
    for field_name, field_rules in rules.items():
        ok, sanitized, field_errors = validate_field(data.get(field_name), field_rules, field_name)
        if ok:
            clean[field_name] = sanitized
        else:
            errors.extend(field_errors)
    return clean, errors


def validate_body(rules: dict):
    """
    Usage: @validate_body(RULES["login"])

    Merges the validated values back into g.body; raises ValidationError
    with every failed field's message.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            body = getattr(g, "body", None) or {}
            clean, errors = validate_fields(body, rules)
            if errors:
                raise ValidationError(errors)
            merged = dict(body)
            merged.update(clean)
            g.body = merged
            return fn(*args, **kwargs)
        return wrapper
    return decorator
