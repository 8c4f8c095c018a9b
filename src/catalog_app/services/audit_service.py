"""
Audit logging service for security events.

Writes are best-effort: a failing audit sink is logged and swallowed so it
never blocks a login or an admin mutation. Listing, statistics and retention
rotation are admin-only reads/maintenance on the same table.
"""

import json
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from src.catalog_app.models.audit_log import AuditLog
from src.catalog_app.services.failure_policy import (
    FailureDomain,
    guarded_call,
    store_errors,
)
from src.catalog_app.utils.timeutils import as_utc, utcnow

SEVERITIES = ("info", "warning", "critical")
DAYS_PER_MONTH = 30

_LOG_LEVELS = {"info": "info", "warning": "warning", "critical": "error"}


def _to_dict(entry: AuditLog) -> Dict[str, Any]:
    metadata = None
    if entry.metadata_json:
        try:
            metadata = json.loads(entry.metadata_json)
        except ValueError:
            metadata = {"raw": entry.metadata_json}
    timestamp = as_utc(entry.timestamp)
    return {
        "id": entry.id,
        "timestamp": timestamp.isoformat() if timestamp else None,
        "actor": entry.actor,
        "action": entry.action,
        "target": entry.target,
        "ip": entry.ip,
        "metadata": metadata,
        "severity": entry.severity,
        "success": entry.success,
    }


class AuditLogService:
    """Append-only recorder of security-relevant events."""

    def record(
        self,
        db: Session,
        action: str,
        actor: Optional[str] = None,
        target: Optional[str] = None,
        ip: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        severity: str = "info",
        success: bool = True,
        now: Optional[datetime] = None,
    ) -> Optional[AuditLog]:
        """
        Record an audit entry. Returns None when the sink is unavailable.

        Args:
            db: Database session
            action: Event name (login_success, login_failed, user_created, ...)
            actor: Username performing the action ("anonymous" if unknown)
            target: Affected object (username, table, ...)
            ip: Client IP address
            metadata: Extra context, stored as JSON
            severity: info, warning or critical
            success: Whether the action succeeded
        """
        if severity not in SEVERITIES:
            severity = "info"
        actor = actor or "anonymous"

        getattr(logger, _LOG_LEVELS[severity])(
            f"AUDIT[{action}]: actor={actor} target={target or 'N/A'} ip={ip or 'N/A'}"
        )
        return guarded_call(
            FailureDomain.AUDIT_SINK,
            self._insert,
            db,
            AuditLog(
                timestamp=now or utcnow(),
                actor=actor[:191],
                action=action[:50],
                target=target[:255] if target else None,
                ip=ip,
                metadata_json=self._serialize(metadata),
                severity=severity,
                success=success,
            ),
        )

    def list_entries(
        self,
        db: Session,
        page: int = 1,
        per_page: int = 25,
        search: Optional[str] = None,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        page = max(1, page)
        per_page = per_page if 1 <= per_page <= 200 else 25

        with store_errors(db, FailureDomain.AUDIT_SINK):
            query = db.query(AuditLog)
            if search:
                like = f"%{search.strip()}%"
                query = query.filter(
                    or_(
                        AuditLog.actor.like(like),
                        AuditLog.action.like(like),
                        AuditLog.target.like(like),
                    )
                )
            if action:
                query = query.filter(AuditLog.action == action)
            if actor:
                query = query.filter(AuditLog.actor == actor)
            if from_date:
                start = datetime.combine(from_date, time.min, tzinfo=timezone.utc)
                query = query.filter(AuditLog.timestamp >= start)
            if to_date:
                end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
                query = query.filter(AuditLog.timestamp < end)

            total = query.count()
            rows = (
                query.order_by(AuditLog.id.desc())
                .offset((page - 1) * per_page)
                .limit(per_page)
                .all()
            )

        return {
            "items": [_to_dict(row) for row in rows],
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": max(1, math.ceil(total / per_page)),
        }

    def stats(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        periods = {
            "last_24h": timedelta(hours=24),
            "last_week": timedelta(days=7),
            "last_month": timedelta(days=30),
            "last_3_months": timedelta(days=90),
            "last_6_months": timedelta(days=180),
        }
        recent = now - timedelta(days=30)

        with store_errors(db, FailureDomain.AUDIT_SINK):
            stats: Dict[str, Any] = {"total_records": db.query(AuditLog).count()}
            for key, span in periods.items():
                stats[key] = (
                    db.query(AuditLog).filter(AuditLog.timestamp >= now - span).count()
                )
            stats["older_than_6_months"] = (
                db.query(AuditLog)
                .filter(AuditLog.timestamp < now - timedelta(days=6 * DAYS_PER_MONTH))
                .count()
            )
            stats["failures_24h"] = (
                db.query(AuditLog)
                .filter(
                    AuditLog.timestamp >= now - timedelta(hours=24),
                    AuditLog.success.is_(False),
                )
                .count()
            )
            stats["top_actions"] = self._top(db, AuditLog.action, "action", recent)
            stats["top_actors"] = self._top(db, AuditLog.actor, "actor", recent)
        return stats

    def rotate(
        self,
        db: Session,
        retention_months: int,
        batch_size: int = 1000,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Delete entries older than the retention period, batch_size rows at a time.

        retention_months is clamped to 1..24 and batch_size to 100..10000.
        """
        retention_months = max(1, min(24, int(retention_months)))
        batch_size = max(100, min(10000, int(batch_size)))
        cutoff = (now or utcnow()) - timedelta(days=retention_months * DAYS_PER_MONTH)

        deleted = 0
        batches = 0
        with store_errors(db, FailureDomain.AUDIT_SINK):
            eligible = db.query(AuditLog).filter(AuditLog.timestamp < cutoff).count()
            if not dry_run:
                while True:
                    ids = [
                        row.id
                        for row in db.query(AuditLog.id)
                        .filter(AuditLog.timestamp < cutoff)
                        .order_by(AuditLog.id.asc())
                        .limit(batch_size)
                        .all()
                    ]
                    if not ids:
                        break
                    deleted += (
                        db.query(AuditLog)
                        .filter(AuditLog.id.in_(ids))
                        .delete(synchronize_session=False)
                    )
                    db.commit()
                    batches += 1

        logger.info(
            f"Audit rotation: {deleted}/{eligible} entries older than "
            f"{retention_months} months removed in {batches} batches"
        )
        return {
            "eligible": eligible,
            "deleted": deleted,
            "batches": batches,
            "retention_months": retention_months,
            "batch_size": batch_size,
            "cutoff": cutoff.isoformat(),
            "dry_run": dry_run,
        }

    @staticmethod
    def _insert(db: Session, entry: AuditLog) -> AuditLog:
        with store_errors(db, FailureDomain.AUDIT_SINK):
            db.add(entry)
            db.commit()
        return entry

    @staticmethod
    def _serialize(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
        if not metadata:
            return None
        try:
            return json.dumps(metadata, default=str)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to serialize audit metadata: {e}")
            return None

    @staticmethod
    def _top(db: Session, column, label: str, since: datetime) -> List[Dict[str, Any]]:
        rows = (
            db.query(column, func.count(AuditLog.id).label("count"))
            .filter(AuditLog.timestamp >= since)
            .group_by(column)
            .order_by(func.count(AuditLog.id).desc())
            .limit(10)
            .all()
        )
        return [{label: value, "count": count} for value, count in rows]


# Global service instance
audit_service = AuditLogService()
