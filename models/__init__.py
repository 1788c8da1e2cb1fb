from .db import db
from .audit_log import AuditLog
from .document import StoredDocument
