"""
Vizinho Virtual Gateway - User Seed Script

Admin accounts cannot self-register; this creates the first one, and
optionally one demo account per building role.

Usage:
    SEED_ADMIN_PASSWORD=... python -m scripts.seed_users
"""

import os
from typing import List, Tuple

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from vizinho_gateway.auth.database import get_engine, init_db
from vizinho_gateway.auth.models import Role, User, utcnow
from vizinho_gateway.auth.password import hash_password
from vizinho_gateway.config import settings

DEFAULT_ADMIN_EMAIL = "admin@vizinho.local"

DEMO_BUILDING = "demo-building"

DEMO_USERS: List[Tuple[str, str, Role, str, str]] = [
    ("sindico@vizinho.local", "Sindico2024", Role.MANAGER, "Demo Manager", ""),
    ("morador@vizinho.local", "Morador2024", Role.RESIDENT, "Demo Resident", "101"),
    ("eletricista@vizinho.local", "Prestador2024", Role.PROFESSIONAL, "Demo Professional", ""),
]


def _exists(session: Session, email: str) -> bool:
    return session.exec(select(User).where(User.email == email)).first() is not None


def seed_admin_user(engine: Engine, email: str, password: str, work_factor: int) -> bool:
    """
    Create the platform admin.

    Returns:
        False if an account with that email already exists
    """
    email = email.lower()
    init_db(engine)

    with Session(engine) as session:
        if _exists(session, email):
            return False

        now = utcnow()
        session.add(User(
            email=email,
            password_hash=hash_password(password, work_factor),
            name="Platform Admin",
            role=Role.ADMIN,
            is_active=True,
            created_at=now,
            updated_at=now,
        ))
        session.commit()
        return True


def seed_demo_users(engine: Engine, work_factor: int) -> List[str]:
    """Create demo accounts in DEMO_BUILDING; returns the emails created."""
    init_db(engine)
    created = []

    with Session(engine) as session:
        for email, password, role, name, unit_id in DEMO_USERS:
            if _exists(session, email):
                continue

            now = utcnow()
            session.add(User(
                email=email,
                password_hash=hash_password(password, work_factor),
                name=name,
                role=role,
                building_id=DEMO_BUILDING,
                unit_id=unit_id or None,
                is_active=True,
                created_at=now,
                updated_at=now,
            ))
            created.append(email)

        session.commit()

    return created


if __name__ == "__main__":
    print("=" * 50)
    print("Vizinho Virtual Gateway - User Seed Script")
    print("=" * 50)

    admin_email = os.environ.get("SEED_ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL)
    admin_password = os.environ.get("SEED_ADMIN_PASSWORD")
    if not admin_password:
        raise SystemExit("SEED_ADMIN_PASSWORD must be set")

    engine = get_engine(settings.DATABASE_URL)

    if seed_admin_user(engine, admin_email, admin_password, settings.BCRYPT_WORK_FACTOR):
        print(f"Admin user created: {admin_email}")
    else:
        print("Admin user already exists.")

    print()
    response = input("Create demo users for every building role? (y/n): ")
    if response.lower() == "y":
        for email in seed_demo_users(engine, settings.BCRYPT_WORK_FACTOR):
            print(f"Created user: {email}")

    print()
    print("Done!")
