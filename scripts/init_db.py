import os
import sys
from datetime import datetime
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.wellness_admin.models import User, UserRole
from app.wellness_admin.rbac import ensure_security_permissions, initialize_rbac, role_id
from app.wellness_admin.security import get_security_settings
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed RBAC roles/permissions, the security settings row and the first
    superadmin in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///wellness_admin.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        get_security_settings(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                name="Administrator",
                password_hash=generate_password_hash(admin_password),
                role="superadmin",
                is_active=True,
                password_changed_at=datetime.utcnow(),
            )
            s.add(user)
            s.flush()

        result = initialize_rbac(s, assigned_by=user.id)
        ensure_security_permissions(s)

        superadmin_id = role_id("superadmin")
        if not any(ra.role_id == superadmin_id for ra in user.role_assignments):
            user.role_assignments.append(UserRole(user_id=user.id, role_id=superadmin_id, assigned_by=user.id))

    print("Initialized database (seed_only).")
    print(f"RBAC: {result}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
