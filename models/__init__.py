from .db import db
from .user import User
from .audit_log import AuditLog
