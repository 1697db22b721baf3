import json
import logging

from flask import g, request
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def log_event(action: str, user_id=None, metadata=None):
    ctx = getattr(g, "security", None)
    if ctx is not None:
        ip, user_agent, request_id = ctx.ip, ctx.user_agent, ctx.request_id
    else:
        ip = request.headers.get("X-Forwarded-For", request.remote_addr)
        user_agent, request_id = request.headers.get("User-Agent", ""), None

    logger.info("audit action=%s user_id=%s ip=%s request_id=%s", action, user_id, ip, request_id)

    row = AuditLog(
        user_id=str(user_id) if user_id is not None else None,
        action=action,
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        request_id=request_id,
        metadata_json=json.dumps(metadata) if metadata else None
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        # audit failures are logged, never raised
        db.session.rollback()
        logger.exception("Failed to write audit event %s", action)
