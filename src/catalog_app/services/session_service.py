"""
Server-side sessions and the guard that validates them on every protected request.

SessionStore is the only way handlers read or write session state.
SessionGuard.evaluate is a pure decision over a SessionData snapshot;
SessionGuard.validate applies that decision through the store (destroy,
rotate, refresh).
"""

import math
import secrets
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from loguru import logger
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from src.catalog_app.models.security import SessionRecord
from src.catalog_app.services.errors import NotAuthenticated, SessionExpired, StoreUnavailable
from src.catalog_app.services.failure_policy import (
    FailureDomain,
    guarded_call,
    store_errors,
)
from src.catalog_app.services.security_config import SecurityConfig
from src.catalog_app.utils.timeutils import as_utc, utcnow

SESSION_ID_BYTES = 32

REASON_MESSAGES = {
    "not_logged_in": "No autenticado",
    "session_unavailable": "No se pudo verificar la sesión",
    "idle_timeout": "Sesión expirada por inactividad",
    "absolute_timeout": "Sesión expirada (tiempo absoluto)",
    "fingerprint_mismatch": "Sesión invalidada (cambio de agente)",
}


def new_session_id() -> str:
    return secrets.token_urlsafe(SESSION_ID_BYTES)


@dataclass
class SessionData:
    session_id: str
    user_id: Optional[int] = None
    username: Optional[str] = None
    role: Optional[str] = None
    login_time: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    regen_time: Optional[datetime] = None
    csrf_token: Optional[str] = None
    ua_fingerprint: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.username)

    def clear(self) -> None:
        """Drop every bound field; only the id survives."""
        for f in fields(self):
            if f.name != "session_id":
                setattr(self, f.name, None)

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionData":
        return cls(
            session_id=record.session_id,
            user_id=record.user_id,
            username=record.username,
            role=record.role,
            login_time=as_utc(record.login_time),
            last_activity=as_utc(record.last_activity),
            regen_time=as_utc(record.regen_time),
            csrf_token=record.csrf_token,
            ua_fingerprint=record.ua_fingerprint,
            created_at=as_utc(record.created_at),
        )


class SessionStore:
    """Database-backed session store (the sessions table)."""

    def create(self, db: Session, now: Optional[datetime] = None) -> SessionData:
        """Start an anonymous session; callers usually bind a CSRF token next."""
        now = now or utcnow()
        return SessionData(session_id=new_session_id(), last_activity=now, created_at=now)

    def get(self, db: Session, session_id: Optional[str]) -> Optional[SessionData]:
        if not session_id:
            return None
        with store_errors(db, FailureDomain.SESSION_STORE):
            record = db.get(SessionRecord, session_id)
            return SessionData.from_record(record) if record is not None else None

    def set(self, db: Session, data: SessionData) -> SessionData:
        with store_errors(db, FailureDomain.SESSION_STORE):
            record = db.get(SessionRecord, data.session_id)
            if record is None:
                record = SessionRecord(session_id=data.session_id)
                db.add(record)
            for f in fields(data):
                if f.name == "created_at" and data.created_at is None:
                    continue
                setattr(record, f.name, getattr(data, f.name))
            db.commit()
        return data

    def destroy(self, db: Session, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        with store_errors(db, FailureDomain.SESSION_STORE):
            deleted = (
                db.query(SessionRecord)
                .filter(SessionRecord.session_id == session_id)
                .delete(synchronize_session="evaluate")
            )
            db.commit()
        return deleted > 0

    def destroy_for_user(
        self, db: Session, user_id: int, keep_session_id: Optional[str] = None
    ) -> int:
        """Log a user out everywhere, optionally sparing the caller's own session."""
        with store_errors(db, FailureDomain.SESSION_STORE):
            query = db.query(SessionRecord).filter(SessionRecord.user_id == user_id)
            if keep_session_id:
                query = query.filter(SessionRecord.session_id != keep_session_id)
            deleted = query.delete(synchronize_session="evaluate")
            db.commit()
        if deleted:
            logger.info(f"Revoked {deleted} sessions of user {user_id}")
        return deleted

    def regenerate(self, db: Session, data: SessionData) -> SessionData:
        """
        Move the session to a fresh opaque id, keeping every bound field.

        The old id stops resolving as soon as this commits.
        """
        old_id = data.session_id
        data.session_id = new_session_id()
        with store_errors(db, FailureDomain.SESSION_STORE):
            db.query(SessionRecord).filter(SessionRecord.session_id == old_id).delete(
                synchronize_session="evaluate"
            )
            db.flush()
        try:
            return self.set(db, data)
        except StoreUnavailable:
            data.session_id = old_id
            raise

    def purge_expired(
        self, db: Session, config: SecurityConfig, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        idle_cutoff = now - timedelta(seconds=config.idle_max)
        absolute_cutoff = now - timedelta(seconds=config.absolute_max)
        with store_errors(db, FailureDomain.SESSION_STORE):
            deleted = (
                db.query(SessionRecord)
                .filter(
                    or_(
                        SessionRecord.last_activity < idle_cutoff,
                        SessionRecord.login_time < absolute_cutoff,
                        and_(
                            SessionRecord.last_activity.is_(None),
                            SessionRecord.created_at < idle_cutoff,
                        ),
                    )
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        if deleted:
            logger.info(f"Purged {deleted} expired sessions")
        return deleted


class GuardStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALIDATED = "invalidated"
    NOT_AUTHENTICATED = "not_authenticated"


@dataclass
class GuardResult:
    status: GuardStatus
    session: Optional[SessionData] = None
    reason: Optional[str] = None
    rotate: bool = False
    rotated: bool = False
    destroyed: bool = False

    @property
    def valid(self) -> bool:
        return self.status is GuardStatus.VALID

    @property
    def user(self) -> Optional[str]:
        return self.session.username if self.valid and self.session else None

    @property
    def role(self) -> Optional[str]:
        return (self.session.role or "user") if self.valid and self.session else None

    def raise_for_status(self) -> SessionData:
        if self.valid:
            return self.session
        message = REASON_MESSAGES.get(self.reason)
        if self.status is GuardStatus.NOT_AUTHENTICATED:
            raise NotAuthenticated(message, reason=self.reason or "not_logged_in")
        raise SessionExpired(message, reason=self.reason)


class SessionGuard:
    def __init__(self, config: SecurityConfig, store: Optional[SessionStore] = None):
        self.config = config
        self.store = store or SessionStore()

    def evaluate(
        self,
        session: Optional[SessionData],
        now: datetime,
        current_fingerprint: Optional[str] = None,
    ) -> GuardResult:
        """
        Decide the session's fate without touching the store.

        Checks run in a fixed order: fingerprint, idle limit, absolute limit,
        then the rotation interval.
        """
        if session is None or not session.authenticated:
            return GuardResult(GuardStatus.NOT_AUTHENTICATED, session, reason="not_logged_in")

        if (
            self.config.enforce_fingerprint
            and session.ua_fingerprint
            and current_fingerprint
            and not secrets.compare_digest(session.ua_fingerprint, current_fingerprint)
        ):
            return GuardResult(GuardStatus.INVALIDATED, session, reason="fingerprint_mismatch")

        last_activity = session.last_activity or now
        login_time = session.login_time or now
        regen_time = session.regen_time or now

        if (now - last_activity).total_seconds() > self.config.idle_max:
            return GuardResult(GuardStatus.EXPIRED, session, reason="idle_timeout")
        if (now - login_time).total_seconds() > self.config.absolute_max:
            return GuardResult(GuardStatus.EXPIRED, session, reason="absolute_timeout")

        rotate = (now - regen_time).total_seconds() > self.config.regen_interval
        return GuardResult(GuardStatus.VALID, session, rotate=rotate)

    def validate(
        self,
        db: Session,
        session: Optional[SessionData],
        now: Optional[datetime] = None,
        current_fingerprint: Optional[str] = None,
        refresh: bool = False,
    ) -> GuardResult:
        """
        Evaluate and apply: destroy expired or invalidated sessions, rotate
        the id past the regeneration interval, and move last_activity only
        when refresh is requested.

        Session store failures are fail-closed and come back as
        NOT_AUTHENTICATED with reason session_unavailable.
        """
        now = now or utcnow()
        result = self.evaluate(session, now, current_fingerprint)

        if result.status in (GuardStatus.EXPIRED, GuardStatus.INVALIDATED):
            logger.warning(
                f"Session for '{session.username}' rejected: {result.reason}"
            )
            guarded_call(
                FailureDomain.SESSION_STORE,
                self.store.destroy,
                db,
                session.session_id,
                closed_value=False,
            )
            session.clear()
            result.destroyed = True
            return result

        if not result.valid:
            return result

        try:
            return self._apply(db, result, now, refresh)
        except StoreUnavailable:
            return GuardResult(
                GuardStatus.NOT_AUTHENTICATED, None, reason="session_unavailable"
            )

    def load_and_validate(
        self,
        db: Session,
        session_id: Optional[str],
        now: Optional[datetime] = None,
        current_fingerprint: Optional[str] = None,
        refresh: bool = False,
    ) -> GuardResult:
        try:
            session = self.store.get(db, session_id)
        except StoreUnavailable:
            logger.error("Session store unavailable; treating request as unauthenticated")
            return GuardResult(
                GuardStatus.NOT_AUTHENTICATED, None, reason="session_unavailable"
            )
        return self.validate(db, session, now, current_fingerprint, refresh)

    def idle_remaining(self, session: SessionData, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        elapsed = (now - (session.last_activity or now)).total_seconds()
        return max(0, math.ceil(self.config.idle_max - elapsed))

    def absolute_remaining(self, session: SessionData, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        elapsed = (now - (session.login_time or now)).total_seconds()
        return max(0, math.ceil(self.config.absolute_max - elapsed))

    def _apply(self, db: Session, result: GuardResult, now: datetime, refresh: bool) -> GuardResult:
        session = result.session
        dirty = False
        if session.login_time is None:
            session.login_time = now
            dirty = True
        if session.last_activity is None:
            session.last_activity = now
            dirty = True
        if session.regen_time is None:
            session.regen_time = now
            dirty = True

        if result.rotate:
            session.regen_time = now
            if refresh:
                session.last_activity = now
            self.store.regenerate(db, session)
            result.rotated = True
            logger.info(f"Session id rotated for '{session.username}'")
            return result

        if refresh:
            session.last_activity = now
            dirty = True
        if dirty:
            self.store.set(db, session)
        return result


session_store = SessionStore()
