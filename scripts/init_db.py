import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.polimaks.constants import DEFAULT_MACHINES
from app.polimaks.models import Permission, Role, User
from app.polimaks.modules.machines.models import Machine
from app.polimaks.utils import raw_phone
from scripts._db_utils import script_database_url, script_session

PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: overview and audit trail"),
    ("inventory.view", "Warehouse: view"),
    ("inventory.edit", "Warehouse: edit items, movements and mixtures"),
    ("machines.view", "Machines: view"),
    ("machines.edit", "Machines: edit machines and brigades"),
    ("staff.view", "Staff: view"),
    ("staff.edit", "Staff: edit"),
    ("clients.view", "Clients: view"),
    ("clients.edit", "Clients: edit clients, CRM and tolling"),
    ("orders.view", "Order book: view"),
    ("orders.edit", "Order book: edit"),
    ("production.view", "Production: view plans"),
    ("production.edit", "Production: edit plans and material usage"),
    ("partners.view", "Partners: view"),
    ("partners.edit", "Partners: edit"),
    ("finance.view", "Finance: view"),
    ("finance.edit", "Finance: edit entries and rates"),
    ("users.view", "Users: view"),
    ("users.edit", "Users: create and edit"),
    ("backup.view", "Backups: view snapshots"),
    ("backup.edit", "Backups: import and export"),
)


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions, the admin role, the admin user and default machines.
    Idempotent; does NOT overwrite an existing admin user's password.
    """
    admin_phone = raw_phone(os.environ.get("ADMIN_PHONE") or "901234567")
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = script_database_url(database_url)

    with script_session(db_url) as s:
        perms: list[Permission] = []
        for key, name in PERMISSIONS:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms.append(p)

        role_admin = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role_admin:
            role_admin = Role(key="admin", name="Administrator")
            s.add(role_admin)
        for p in perms:
            if p not in role_admin.permissions:
                role_admin.permissions.append(p)

        u = s.query(User).filter(User.phone_number == admin_phone).one_or_none()
        if not u:
            u = User(
                phone_number=admin_phone,
                fullname="Administrator",
                password_hash=generate_password_hash(admin_password),
                is_active=True,
            )
            u.roles.append(role_admin)
            s.add(u)
        elif role_admin not in u.roles:
            u.roles.append(role_admin)

        for machine_type, names in DEFAULT_MACHINES.items():
            for name in names:
                exists = (
                    s.query(Machine.id)
                    .filter(Machine.machine_type == machine_type, Machine.name == name)
                    .first()
                )
                if not exists:
                    s.add(Machine(machine_type=machine_type, name=name))


def main() -> None:
    seed_only()
    print("Seed complete.")


if __name__ == "__main__":
    main()
