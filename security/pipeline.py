"""
Request security pipeline.

Per request, in order:
  1. attach a SecurityContext (request id, ip, user agent, device fingerprint)
  2. scan the raw body / query / path for known attack signatures and reject
  3. sanitize every string leaf of the body and query in place
Field-level validation runs later, per route (see security.validation).
Hardening headers and X-Request-ID are stamped on every response,
rejections included.

Sanitization is best-effort defense in depth; it does not replace
parameterized queries or output escaping.
"""
import re
import secrets
import time
from dataclasses import dataclass

from flask import current_app, g, request

from security.errors import SecurityViolation
from security.rate_limit import client_ip
from security.tokens import generate_device_fingerprint
from utils.audit import log_event


@dataclass
class SecurityContext:
    ip: str
    user_agent: str
    timestamp: float
    request_id: str
    device_fingerprint: str


SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none';",
}

# Opaque values: never rendered or interpolated, and random enough to trip signatures
OPAQUE_FIELDS = frozenset({"password", "token", "refreshToken", "csrfToken"})

SUSPICIOUS_PATTERNS = [re.compile(p, re.I) for p in (
    # SQL injection
    r"union\s+select",
    r"drop\s+table",
    r"insert\s+into",
    r"delete\s+from",
    r"update\s+set",
    r"or\s+1\s*=\s*1",
    r"'\s*or\s*'1'\s*=\s*'1",
    r"'\s*or\s*1\s*=\s*1\s*--",
    r"'\s*;\s*drop",
    r"'\s*;\s*delete",
    r"'\s*;\s*insert",
    r"'\s*;\s*update",
    r"/\*.*\*/",
    r"--\s*$",
    r"'\s*\|\|\s*'",
    # XSS
    r"<script",
    r"</script>",
    r"javascript:",
    r"eval\(",
    r"function\(",
    r"onclick\s*=",
    r"onload\s*=",
    r"onerror\s*=",
    r"onmouseover\s*=",
    r"<iframe",
    r"<object",
    r"<embed",
    r"vbscript:",
    r"data:text/html",
    # command injection
    r";\s*cat\s+",
    r";\s*ls\s+",
    r";\s*pwd",
    r";\s*whoami",
    r"\|\s*nc\s+",
    r"\|\s*netcat\s+",
    r"&&\s*cat\s+",
    r"`.*`",
    r"\$\(.*\)",
)]

_SANITIZERS = [(re.compile(p, re.I), "") for p in (
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>",
    r"javascript:",
    r"vbscript:",
    r"on\w+\s*=",
    r"<iframe[^>]*>",
    r"<object[^>]*>",
    r"<embed[^>]*>",
    r"eval\s*\(",
    r"function\s*\(",
    r"setTimeout\s*\(",
    r"setInterval\s*\(",
    r"union\s+select",
    r"drop\s+table",
    r"delete\s+from",
    r"insert\s+into",
    r"update\s+set",
    r"'\s*or\s*'1'\s*=\s*'1",
    r"'\s*or\s*1\s*=\s*1",
    r"--\s*$",
    r"/\*.*\*/",
    r";\s*drop",
    r";\s*delete",
    r";\s*insert",
    r";\s*update",
    r";\s*cat\s+",
    r";\s*ls\s+",
    r";\s*pwd",
    r";\s*whoami",
    r"\|\s*nc\s+",
    r"&&\s*cat\s+",
    r"`[^`]*`",
    r"\$\([^)]*\)",
)]


def find_suspicious(value):
    """First matching signature in any string leaf of value, else None."""
    if isinstance(value, str):
        for pattern in SUSPICIOUS_PATTERNS:
            if pattern.search(value):
                return pattern.pattern
        return None
    if isinstance(value, dict):
        for key, item in value.items():
            if key in OPAQUE_FIELDS:
                continue
            hit = find_suspicious(key) or find_suspicious(item)
            if hit:
                return hit
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            hit = find_suspicious(item)
            if hit:
                return hit
    return None


def sanitize_value(value):
    """Strip injection fragments from every string leaf. Dicts and lists are edited in place."""
    if isinstance(value, str):
        for pattern, repl in _SANITIZERS:
            value = pattern.sub(repl, value)
        return value.strip()
    if isinstance(value, dict):
        for key in list(value.keys()):
            if key in OPAQUE_FIELDS:
                continue
            value[key] = sanitize_value(value[key])
        return value
    if isinstance(value, list):
        for i, item in enumerate(value):
            value[i] = sanitize_value(item)
        return value
    return value


def attach_context():
    ip = client_ip()
    user_agent = request.headers.get("User-Agent") or "unknown"
    g.security = SecurityContext(
        ip=ip,
        user_agent=user_agent,
        timestamp=time.time(),
        request_id=secrets.token_hex(16),
        device_fingerprint=generate_device_fingerprint(user_agent, ip),
    )


def detect_suspicious_activity():
    body = request.get_json(silent=True)
    query = request.args.to_dict(flat=False)

    hit = find_suspicious(body) or find_suspicious(query) or find_suspicious(request.path)
    if hit is None:
        return

    ctx = g.security
    current_app.logger.warning(
        "SECURITY ALERT: suspicious request blocked ip=%s method=%s path=%s ua=%s request_id=%s pattern=%s",
        ctx.ip, request.method, request.path, ctx.user_agent, ctx.request_id, hit,
    )
    log_event("SUSPICIOUS_REQUEST", metadata={"path": request.path, "method": request.method, "pattern": hit})
    raise SecurityViolation(f"matched {hit}")


def sanitize_input():
    body = request.get_json(silent=True)
    if isinstance(body, (dict, list)):
        sanitize_value(body)
    g.body = body if isinstance(body, dict) else {}

    query = {}
    for key, values in request.args.lists():
        cleaned = [sanitize_value(v) for v in values]
        query[key] = cleaned[0] if len(cleaned) == 1 else cleaned
    g.query = query


def stamp_headers(resp):
    for name, value in SECURITY_HEADERS.items():
        resp.headers.setdefault(name, value)
    ctx = getattr(g, "security", None)
    if ctx is not None:
        resp.headers["X-Request-ID"] = ctx.request_id
    return resp


def init_pipeline(app):
    @app.before_request
    def _security_pipeline():
        attach_context()
        detect_suspicious_activity()
        sanitize_input()

    app.after_request(stamp_headers)
