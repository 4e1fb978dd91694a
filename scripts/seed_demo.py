"""
Gatekeeper - Demo Seed Script

Creates the ``demo`` tenant with the system roles and an admin user.

Usage:
    python -m scripts.seed_demo
"""

from sqlmodel import Session

from gatekeeper.config import settings, configure_logging
from gatekeeper.auth.database import get_engine, init_db
from gatekeeper.auth.seed import (
    DEMO_ADMIN_EMAIL,
    DEMO_ADMIN_PASSWORD,
    DEMO_TENANT_CODE,
    seed_demo_tenant,
)


def main():
    configure_logging()
    engine = get_engine(settings.DATABASE_URL)
    init_db(engine)

    with Session(engine, expire_on_commit=False) as session:
        tenant = seed_demo_tenant(session)

    print("Demo tenant ready.")
    print(f"  Tenant: {DEMO_TENANT_CODE} ({tenant.id})")
    print(f"  Email: {DEMO_ADMIN_EMAIL}")
    print(f"  Password: {DEMO_ADMIN_PASSWORD}")
    print("  Role: admin")


if __name__ == "__main__":
    print("=" * 50)
    print("Gatekeeper - Demo Seed Script")
    print("=" * 50)
    main()
