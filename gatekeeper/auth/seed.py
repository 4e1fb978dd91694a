"""
Gatekeeper - Catalog and Demo Seeding

Installs the shared permission catalog and the default system roles from
catalog.yaml, and builds the ``demo`` tenant used for local development.
"""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from sqlmodel import Session as DBSession, select

from gatekeeper.auth import admin
from gatekeeper.auth.models import Role, Tenant, User


CATALOG_PATH = Path(__file__).parent / "catalog.yaml"

DEMO_TENANT_CODE = "demo"
DEMO_ADMIN_EMAIL = "admin@demo.com"
DEMO_ADMIN_PASSWORD = "admin123"


def load_catalog(path: Optional[Path] = None) -> Dict:
    """Load permissions and system roles. A missing file means an empty catalog."""
    catalog_path = path or CATALOG_PATH
    if not catalog_path.exists():
        return {"permissions": {}, "roles": {}}

    with open(catalog_path, "r") as f:
        config = yaml.safe_load(f) or {}

    return {
        "permissions": config.get("permissions", {}) or {},
        "roles": config.get("roles", {}) or {},
    }


def seed_permissions(db: DBSession, catalog: Optional[Dict] = None) -> int:
    """Create any missing catalog permissions. Returns the catalog size."""
    catalog = catalog or load_catalog()
    for code, description in catalog["permissions"].items():
        admin.ensure_permission(db, code, description or "")
    return len(catalog["permissions"])


def seed_tenant_roles(db: DBSession, tenant_id, catalog: Optional[Dict] = None) -> List[Role]:
    """Install the system roles into a tenant, skipping ones already present."""
    catalog = catalog or load_catalog()
    seed_permissions(db, catalog)

    roles = []
    for code, role_def in catalog["roles"].items():
        existing = db.exec(select(Role).where(Role.tenant_id == tenant_id, Role.code == code)).first()
        if existing:
            roles.append(existing)
            continue
        roles.append(admin.create_role(
            db,
            tenant_id,
            code,
            name=role_def.get("name", code),
            permission_codes=role_def.get("permissions", []),
            is_system=True,
        ))
    return roles


def seed_demo_tenant(db: DBSession) -> Tenant:
    """
    Create tenant ``demo`` with admin@demo.com / admin123 holding ``admin``.

    Idempotent.
    """
    tenant = db.exec(select(Tenant).where(Tenant.code == DEMO_TENANT_CODE)).first()
    if tenant is None:
        tenant = admin.create_tenant(db, DEMO_TENANT_CODE, "Demo Tenant")

    seed_tenant_roles(db, tenant.id)

    user = db.exec(
        select(User).where(User.tenant_id == tenant.id, User.email == DEMO_ADMIN_EMAIL)
    ).first()
    if user is None:
        admin.create_user(
            db,
            tenant.id,
            DEMO_ADMIN_EMAIL,
            DEMO_ADMIN_PASSWORD,
            role_codes=["admin"],
            is_verified=True,
        )
    return tenant
