from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from src.api import schemas
from src.api.dependencies import (
    get_db,
    rate_limited,
    require_admin,
    require_admin_csrf,
    require_csrf,
)
from src.catalog_app.services.audit_service import audit_service
from src.catalog_app.services.session_service import SessionData
from src.catalog_app.services.user_service import user_service
from src.catalog_app.utils import client_ip

router = APIRouter(dependencies=[Depends(rate_limited("admin_users", limit=60, window_seconds=60))])


@router.get("", response_model=List[schemas.UserResponse])
def list_users(
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """List CMS accounts (admin only)."""
    return user_service.list_users(db)


@router.post("", response_model=schemas.UserResponse)
def create_user(
    request: Request,
    payload: schemas.UserCreate,
    admin: SessionData = Depends(require_admin_csrf),
    db: Session = Depends(get_db),
):
    user = user_service.create_user(db, payload.username, payload.password, role=payload.role)
    audit_service.record(
        db,
        "user_created",
        actor=admin.username,
        target=user.username,
        ip=client_ip(request),
        metadata={"user_id": user.id, "role": user.role},
    )
    return user


@router.post("/me/password")
def change_own_password(
    request: Request,
    payload: schemas.PasswordChangeRequest,
    session: SessionData = Depends(require_csrf),
    db: Session = Depends(get_db),
):
    """Change the logged-in user's password (current password required)."""
    user_service.change_own_password(
        db,
        session.user_id,
        payload.current_password,
        payload.new_password,
        keep_session_id=session.session_id,
    )
    audit_service.record(
        db,
        "password_changed",
        actor=session.username,
        target=session.username,
        ip=client_ip(request),
    )
    return {"success": True, "message": "Contraseña actualizada"}


@router.post("/{user_id}/password")
def reset_password(
    user_id: int,
    request: Request,
    payload: schemas.PasswordResetRequest,
    admin: SessionData = Depends(require_admin_csrf),
    db: Session = Depends(get_db),
):
    """Force a new password on an account (admin only)."""
    user = user_service.set_password(
        db, user_id, payload.new_password, keep_session_id=admin.session_id
    )
    audit_service.record(
        db,
        "password_reset",
        actor=admin.username,
        target=user.username,
        ip=client_ip(request),
        metadata={"user_id": user.id},
        severity="warning",
    )
    return {"success": True, "message": "Contraseña actualizada"}


@router.post("/{user_id}/role", response_model=schemas.UserResponse)
def update_role(
    user_id: int,
    request: Request,
    payload: schemas.RoleUpdateRequest,
    admin: SessionData = Depends(require_admin_csrf),
    db: Session = Depends(get_db),
):
    user = user_service.get(db, user_id)
    previous = user.role if user else None
    user = user_service.set_role(db, user_id, payload.role)
    audit_service.record(
        db,
        "role_changed",
        actor=admin.username,
        target=user.username,
        ip=client_ip(request),
        metadata={"user_id": user.id, "from": previous, "to": user.role},
        severity="warning",
    )
    return user
