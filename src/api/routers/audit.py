from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from src.api import schemas
from src.api.dependencies import get_db, rate_limited, require_admin, require_admin_csrf
from src.catalog_app.services.audit_service import audit_service
from src.catalog_app.services.session_service import SessionData
from src.catalog_app.utils import client_ip

router = APIRouter(dependencies=[Depends(rate_limited("audit_read", limit=120, window_seconds=60))])


@router.get("", response_model=schemas.AuditPage)
def list_audit_entries(
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=200),
    search: Optional[str] = None,
    action: Optional[str] = None,
    actor: Optional[str] = None,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Paginated audit log, newest first, with optional filters."""
    return audit_service.list_entries(
        db,
        page=page,
        per_page=per_page,
        search=search,
        action=action,
        actor=actor,
        from_date=from_date,
        to_date=to_date,
    )


@router.get("/stats")
def audit_stats(
    admin: SessionData = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return {"success": True, "stats": audit_service.stats(db)}


@router.post("/rotate")
def rotate_audit_log(
    request: Request,
    payload: schemas.AuditRotateRequest,
    admin: SessionData = Depends(require_admin_csrf),
    db: Session = Depends(get_db),
):
    """Delete entries older than the retention period. The rotation itself is audited."""
    result = audit_service.rotate(
        db,
        retention_months=payload.retention_months,
        batch_size=payload.batch_size,
        dry_run=payload.dry_run,
    )
    audit_service.record(
        db,
        "manual_log_rotation",
        actor=admin.username,
        target="audit_logs",
        ip=client_ip(request),
        metadata=result,
        severity="warning",
    )
    return {"success": True, "result": result}
