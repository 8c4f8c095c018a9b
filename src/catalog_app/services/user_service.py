"""
User-record store for the admin CMS accounts.

Exposes the lookups the login core needs (find_by_username,
update_last_login) plus the small admin user-management surface.
"""

import re
from datetime import datetime
from typing import List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from src.catalog_app.models.database import USER_ROLES, User
from src.catalog_app.services.auth_service import get_password_hash, verify_password
from src.catalog_app.services.errors import (
    AuthenticationFailure,
    InvalidRequest,
    NotFound,
    PermissionDenied,
)
from src.catalog_app.services.failure_policy import FailureDomain, store_errors
from src.catalog_app.services.session_service import SessionStore, session_store
from src.catalog_app.utils.timeutils import utcnow

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{3,30}$")
MIN_PASSWORD_LENGTH = 8


def validate_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_PATTERN.match(username):
        raise InvalidRequest(
            "El usuario debe tener 3-30 caracteres (letras, números, _ . -)",
            reason="invalid_username",
        )
    return username


def validate_password(password: str) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequest(
            f"La contraseña debe tener al menos {MIN_PASSWORD_LENGTH} caracteres",
            reason="weak_password",
        )
    return password


def validate_role(role: str) -> str:
    if role not in USER_ROLES:
        raise InvalidRequest("Rol inválido", reason="invalid_role")
    return role


class UserRecordStore:
    def __init__(self, sessions: Optional[SessionStore] = None):
        self.sessions = sessions or session_store

    def find_by_username(self, db: Session, username: str) -> Optional[User]:
        if not username:
            return None
        with store_errors(db, FailureDomain.USER_STORE):
            return db.query(User).filter(User.username == username).first()

    def get(self, db: Session, user_id: int) -> Optional[User]:
        with store_errors(db, FailureDomain.USER_STORE):
            return db.query(User).filter(User.id == user_id).first()

    def update_last_login(
        self,
        db: Session,
        user_id: int,
        ip: Optional[str],
        ua_hash: Optional[str],
        now: Optional[datetime] = None,
    ) -> None:
        """Record last-login metadata. Callers treat failures as non-fatal."""
        with store_errors(db, FailureDomain.USER_METADATA):
            db.query(User).filter(User.id == user_id).update(
                {
                    User.last_login_at: now or utcnow(),
                    User.last_login_ip: ip,
                    User.last_login_ua: ua_hash,
                },
                synchronize_session=False,
            )
            db.commit()

    def list_users(self, db: Session) -> List[User]:
        with store_errors(db, FailureDomain.USER_STORE):
            return db.query(User).order_by(User.id.asc()).all()

    def create_user(
        self, db: Session, username: str, password: str, role: str = "user"
    ) -> User:
        username = validate_username(username)
        validate_password(password)
        validate_role(role)

        if self.find_by_username(db, username):
            raise InvalidRequest("El usuario ya existe", reason="username_taken")

        with store_errors(db, FailureDomain.USER_STORE):
            user = User(
                username=username,
                password_hash=get_password_hash(password),
                role=role,
                is_active=True,
            )
            db.add(user)
            db.commit()
            db.refresh(user)

        logger.info(f"User '{username}' created with role '{role}'")
        return user

    def set_password(
        self,
        db: Session,
        user_id: int,
        new_password: str,
        keep_session_id: Optional[str] = None,
    ) -> User:
        """Replace the password hash and end the user's other sessions."""
        validate_password(new_password)
        user = self._require(db, user_id)
        with store_errors(db, FailureDomain.USER_STORE):
            user.password_hash = get_password_hash(new_password)
            db.commit()
        self.sessions.destroy_for_user(db, user.id, keep_session_id)
        logger.info(f"Password reset for user '{user.username}'")
        return user

    def change_own_password(
        self,
        db: Session,
        user_id: int,
        current_password: str,
        new_password: str,
        keep_session_id: Optional[str] = None,
    ) -> User:
        user = self._require(db, user_id)
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationFailure(
                "La contraseña actual es incorrecta", reason="invalid_current_password"
            )
        if current_password == new_password:
            raise InvalidRequest(
                "La nueva contraseña debe ser distinta", reason="password_unchanged"
            )
        return self.set_password(db, user_id, new_password, keep_session_id)

    def set_role(
        self, db: Session, user_id: int, role: str, keep_session_id: Optional[str] = None
    ) -> User:
        """Change the role; sessions holding the old role are revoked."""
        validate_role(role)
        user = self._require(db, user_id)
        if user.role == "admin" and role != "admin" and self._admin_count(db) <= 1:
            raise PermissionDenied(
                "No se puede quitar el rol al último administrador", reason="last_admin"
            )
        changed = user.role != role
        with store_errors(db, FailureDomain.USER_STORE):
            user.role = role
            db.commit()
        if changed:
            self.sessions.destroy_for_user(db, user.id, keep_session_id)
        logger.info(f"User '{user.username}' role set to '{role}'")
        return user

    def ensure_admin_exists(self, db: Session) -> Optional[User]:
        """
        Promote the oldest account to admin when no admin exists.

        Returns the promoted user, or None if nothing changed.
        """
        if self._admin_count(db) > 0:
            return None
        with store_errors(db, FailureDomain.USER_STORE):
            oldest = db.query(User).order_by(User.id.asc()).first()
            if oldest is None:
                return None
            oldest.role = "admin"
            db.commit()
        logger.warning(f"No admin account found; promoted '{oldest.username}' to admin")
        return oldest

    def _admin_count(self, db: Session) -> int:
        with store_errors(db, FailureDomain.USER_STORE):
            return db.query(User).filter(User.role == "admin").count()

    def _require(self, db: Session, user_id: int) -> User:
        user = self.get(db, user_id)
        if user is None:
            raise NotFound("Usuario no encontrado", reason="user_not_found")
        return user


user_service = UserRecordStore()
