"""
Clear failed-login history for a username (manual unlock).

Usage: python scripts/clear_user_lockout.py <username>
"""

import argparse
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from loguru import logger  # noqa: E402

from src.catalog_app.models.database import create_tables, get_session  # noqa: E402
from src.catalog_app.services.audit_service import audit_service  # noqa: E402
from src.catalog_app.services.security_config import load_security_config  # noqa: E402
from src.catalog_app.services.throttle_service import LoginThrottle  # noqa: E402


def clear_lockout(username: str) -> int:
    create_tables()
    throttle = LoginThrottle(load_security_config())
    with get_session() as session:
        deleted = throttle.clear_username(session, username)
        audit_service.record(
            session,
            "lockout_cleared",
            actor="cli",
            target=username,
            metadata={"attempts_removed": deleted},
            severity="warning",
        )
    if deleted:
        logger.info(f"Cleared {deleted} failed attempts for {username}.")
    else:
        logger.info(f"No failed attempts found for {username} to clear.")
    return deleted


def main() -> int:
    parser = argparse.ArgumentParser(description="Clear failed-login lockout for a user")
    parser.add_argument("username")
    args = parser.parse_args()
    clear_lockout(args.username)
    return 0


if __name__ == "__main__":
    sys.exit(main())
