import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.constants import (  # noqa: E402
    ALL_PERMISSIONS,
    PERM_APPROVE,
    PERM_CLOSE_ACTION,
    PERM_CREATE,
    PERM_DELETE,
    PERM_DOWNLOAD,
    PERM_EDIT,
    PERM_ISSUE,
    PERM_REVISE,
    PERM_SUBMIT,
    PERM_VIEW,
)
from app.riskdocs.models import Permission, Role, User  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

# Assessors draft, submit and revise; issuing and approval stay with reviewers/admin.
ROLE_PERMISSIONS = {
    "admin": ("Administrator", tuple(ALL_PERMISSIONS)),
    "reviewer": (
        "Reviewer",
        (PERM_VIEW, PERM_SUBMIT, PERM_APPROVE, PERM_ISSUE, PERM_DOWNLOAD, PERM_CLOSE_ACTION),
    ),
    "assessor": (
        "Assessor",
        (PERM_VIEW, PERM_CREATE, PERM_EDIT, PERM_SUBMIT, PERM_REVISE, PERM_DELETE, PERM_DOWNLOAD, PERM_CLOSE_ACTION),
    ),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@riskdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///riskdocs.db").strip()

    # Direct engine/session so this can run in release without building the Flask app.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in ALL_PERMISSIONS.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for role_key, (role_name, keys) in ROLE_PERMISSIONS.items():
            role = s.query(Role).filter(Role.key == role_key).one_or_none()
            if not role:
                role = Role(key=role_key, name=role_name)
                s.add(role)
            for key in keys:
                if perms[key] not in role.permissions:
                    role.permissions.append(perms[key])
            roles[role_key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
