"""
Ensure an admin account exists for first-run setup.

Behavior:
- Initializes DB schema if needed.
- If an admin user already exists, does nothing.
- Otherwise creates (or promotes) the bootstrap admin from the settings below.

Bootstrap settings (env or env.properties via src.config):
- CATALOG_BOOTSTRAP_ADMIN_USERNAME
- CATALOG_BOOTSTRAP_ADMIN_PASSWORD (at least 8 characters; no default)
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src import config  # noqa: E402
from src.catalog_app.models.database import User, get_session, init_database  # noqa: E402
from src.catalog_app.services.errors import SecurityError  # noqa: E402
from src.catalog_app.services.user_service import user_service  # noqa: E402


def ensure_bootstrap_admin() -> int:
    username = config.BOOTSTRAP_ADMIN_USERNAME.strip()
    password = config.BOOTSTRAP_ADMIN_PASSWORD

    init_database()

    with get_session() as session:
        existing_admin = session.query(User).filter(User.role == "admin").first()
        if existing_admin:
            print(f"Admin user already exists: {existing_admin.username}")
            return 0

        if not username or not password:
            print("Set CATALOG_BOOTSTRAP_ADMIN_USERNAME and CATALOG_BOOTSTRAP_ADMIN_PASSWORD first.")
            return 1

        try:
            user = user_service.find_by_username(session, username)
            if user:
                user_service.set_password(session, user.id, password)
                user_service.set_role(session, user.id, "admin")
                action = "promoted existing user to admin"
            else:
                user_service.create_user(session, username, password, role="admin")
                action = "created new bootstrap admin"
        except SecurityError as exc:
            print(f"Could not create bootstrap admin: {exc.message}")
            return 1

        print("Bootstrap admin ready.")
        print(f"Action: {action}")
        print(f"Username: {username}")
        print("IMPORTANT: Remove the bootstrap settings once you have logged in.")

    return 0


if __name__ == "__main__":
    raise SystemExit(ensure_bootstrap_admin())
