"""
Error taxonomy for the request security layer.

Every error the layer raises towards the HTTP boundary derives from
``SecurityError`` and knows its status code and the message a client may
see. Anything more specific (which check failed, which pattern matched)
stays in ``reason`` and is only ever logged.
"""
from flask import g, jsonify, current_app


class SecurityError(Exception):
    status_code = 400
    public_message = "Request rejected"

    def __init__(self, reason: str = None, public_message: str = None):
        super().__init__(reason or self.public_message)
        self.reason = reason or self.public_message
        if public_message is not None:
            self.public_message = public_message

    def to_dict(self) -> dict:
        return {"success": False, "message": self.public_message}


class ConfigurationError(RuntimeError):
    """Fatal: the process must not start."""


class ValidationError(SecurityError):
    status_code = 400
    public_message = "Validation failed"

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class AuthenticationError(SecurityError):
    status_code = 401
    public_message = "Invalid or expired token"


class InvalidToken(AuthenticationError):
    pass


class InvalidRefreshToken(AuthenticationError):
    public_message = "Invalid or expired refresh token"


class DeviceMismatch(InvalidRefreshToken):
    pass


class RateLimitExceeded(SecurityError):
    status_code = 429
    public_message = "Too many attempts. Please try again later."

    def __init__(self, retry_after: int, reason: str = None):
        self.retry_after = retry_after
        super().__init__(reason)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retryAfter"] = self.retry_after
        return body


class CsrfError(SecurityError):
    status_code = 403
    MISSING = "MISSING_CSRF_TOKEN"
    INVALID = "INVALID_CSRF_TOKEN"

    def __init__(self, code: str):
        self.code = code
        message = "CSRF token required" if code == self.MISSING else "Invalid CSRF token"
        super().__init__(code, public_message=message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["error"] = self.code
        return body


class SecurityViolation(SecurityError):
    status_code = 400
    public_message = "Invalid request detected"


def _request_id():
    ctx = getattr(g, "security", None)
    return ctx.request_id if ctx is not None else None


def register_error_handlers(app):
    @app.errorhandler(SecurityError)
    def _security_error(err):
        body = err.to_dict()
        body["requestId"] = _request_id()
        resp = jsonify(body)
        resp.status_code = err.status_code
        if isinstance(err, RateLimitExceeded):
            resp.headers["Retry-After"] = str(err.retry_after)
        return resp

    @app.errorhandler(Exception)
    def _unexpected_error(err):
        # Let werkzeug HTTP errors (404, 405, ...) keep their own status
        code = getattr(err, "code", None)
        if isinstance(code, int) and 400 <= code < 500:
            resp = jsonify(success=False, message=getattr(err, "description", "Request failed"),
                           requestId=_request_id())
            resp.status_code = code
            return resp

        current_app.logger.exception("Unhandled error (request_id=%s)", _request_id())
        resp = jsonify(success=False, message="Internal server error", requestId=_request_id())
        resp.status_code = 500
        return resp
