"""
Maintenance for the login-defense tables.

Removes login attempts past retention, idle rate-limit windows, expired
sessions and (optionally) audit entries older than the retention period.
Meant for cron, e.g. weekly:

    0 2 * * 0 python scripts/purge_security_tables.py --audit
"""

import argparse
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from loguru import logger  # noqa: E402

from src import config  # noqa: E402
from src.catalog_app.models.database import create_tables, get_session  # noqa: E402
from src.catalog_app.services.audit_service import audit_service  # noqa: E402
from src.catalog_app.services.security_config import load_security_config  # noqa: E402
from src.catalog_app.services.session_service import session_store  # noqa: E402
from src.catalog_app.services.throttle_service import (  # noqa: E402
    LoginThrottle,
    rate_limit_service,
)


def purge(audit: bool, retention_months: int, batch_size: int, dry_run: bool) -> dict:
    create_tables()
    security_config = load_security_config()
    throttle = LoginThrottle(security_config)
    summary = {}

    with get_session() as session:
        if not dry_run:
            summary.update(throttle.purge(session))
            summary["request_windows"] = rate_limit_service.purge(session)
            summary["sessions"] = session_store.purge_expired(session, security_config)
        if audit:
            summary["audit"] = audit_service.rotate(
                session, retention_months, batch_size, dry_run=dry_run
            )
    return summary


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge expired security records")
    parser.add_argument("--audit", action="store_true", help="Also rotate the audit log")
    parser.add_argument(
        "--retention-months",
        type=int,
        default=config.AUDIT_RETENTION_MONTHS,
        help="Audit retention in months (1-24)",
    )
    parser.add_argument(
        "--max-records", type=int, default=1000, help="Audit rows per batch (100-10000)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Count only, delete nothing")
    args = parser.parse_args()

    try:
        summary = purge(args.audit, args.retention_months, args.max_records, args.dry_run)
    except Exception as exc:
        logger.error(f"Purge failed: {exc}")
        logger.exception(exc)
        return 1

    for key, value in summary.items():
        logger.info(f"{key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
