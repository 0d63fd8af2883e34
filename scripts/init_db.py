import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.botconsole.constants import OPERATOR_EXCLUDED_PERMISSIONS, PERMISSIONS
from app.botconsole.models import Permission, Role, User
from scripts._db_utils import resolve_db_url, script_session


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, the admin/operator roles and the admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_username = (os.environ.get("ADMIN_USERNAME") or "admin").strip()
    admin_email = (os.environ.get("ADMIN_EMAIL") or "").strip().lower() or None
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    with script_session(resolve_db_url(database_url)) as s:
        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        def ensure_role(key: str, name: str) -> Role:
            r = s.query(Role).filter(Role.key == key).one_or_none()
            if not r:
                r = Role(key=key, name=name)
                s.add(r)
            return r

        perms = [ensure_perm(key, name) for key, name in PERMISSIONS]

        role_admin = ensure_role("admin", "Administrator")
        role_operator = ensure_role("operator", "Operator")
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)
            if p.key not in OPERATOR_EXCLUDED_PERMISSIONS and p not in role_operator.permissions:
                role_operator.permissions.append(p)

        user = s.query(User).filter(User.username == admin_username).one_or_none()
        if not user:
            user = User(
                username=admin_username,
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            s.add(user)
        if role_admin not in user.roles:
            user.roles.append(role_admin)

    print("Initialized database (seed_only).")
    print(f"Admin username: {admin_username}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    load_dotenv()
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
