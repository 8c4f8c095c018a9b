"""
Persistence for the login-defense core: failed attempts, rate-limit
buckets and server-side sessions.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, UniqueConstraint

from src.catalog_app.models.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class LoginAttempt(Base):
    """
    One row per failed login. Append-only; deleted for an (ip, username)
    pair after a successful login and purged after the retention period.
    """

    __tablename__ = "login_attempts"
    __table_args__ = (
        Index("idx_login_attempts_ip_time", "ip", "attempt_time"),
        Index("idx_login_attempts_user_time", "username", "attempt_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    ip = Column(String(45), nullable=False)
    username = Column(String(191), nullable=False)
    attempt_time = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<LoginAttempt(ip={self.ip}, username={self.username}, at={self.attempt_time})>"


class RateLimitWindow(Base):
    """
    Resetting counter bucket per (key, action). The key is an IP address or
    a username; a bucket older than its window restarts at 1 on the next write.
    """

    __tablename__ = "rate_limit_windows"
    __table_args__ = (
        UniqueConstraint("rate_key", "action", name="uq_rate_limit_key_action"),
        Index("idx_rate_limit_window_start", "window_start"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    rate_key = Column(String(191), nullable=False)  # IP address or username
    action = Column(String(50), nullable=False)
    request_count = Column(Integer, nullable=False, default=1)
    window_start = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_request_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<RateLimitWindow(key={self.rate_key}, action={self.action}, "
            f"count={self.request_count}, start={self.window_start})>"
        )


class SessionRecord(Base):
    """
    Server-side session. Anonymous sessions only carry a CSRF token; the
    identity columns are filled on login.
    """

    __tablename__ = "sessions"

    session_id = Column(String(128), primary_key=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(191), nullable=True, index=True)
    role = Column(String(20), nullable=True)
    login_time = Column(DateTime(timezone=True), nullable=True)
    last_activity = Column(DateTime(timezone=True), nullable=True, index=True)
    regen_time = Column(DateTime(timezone=True), nullable=True)
    csrf_token = Column(String(64), nullable=True)
    ua_fingerprint = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<SessionRecord(user={self.username}, role={self.role})>"
