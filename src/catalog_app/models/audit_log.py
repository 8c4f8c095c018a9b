"""
Audit logging model for security events.

Append-only record of logins, lockouts, session invalidations and admin
mutations on the catalog CMS.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from src.catalog_app.models.database import Base


class AuditLog(Base):
    """
    Audit log entry: {actor, action, target, ip, timestamp, metadata}.

    Rows are written once and never updated. Retention is handled outside
    the request path (see audit_service.rotate).
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    actor = Column(String(191), nullable=False, index=True)  # username or "anonymous"
    action = Column(String(50), nullable=False, index=True)  # login_failed, user_created, ...
    target = Column(String(255), nullable=True)
    ip = Column(String(45), nullable=True, index=True)  # IPv6 max length

    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", Text, nullable=True)

    severity = Column(String(20), nullable=False, default="info")  # info, warning, critical
    success = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action={self.action}, actor={self.actor}, time={self.timestamp})>"
