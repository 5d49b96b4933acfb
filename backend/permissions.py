# permissions.py: permission catalogue, default roles and the permission resolver
#
# A role reference may arrive as a bare string (a role name or a role id,
# names matched first), an explicit id (RoleId or uuid.UUID) or an
# already-loaded object exposing ``permissions``. The resolver normalises it
# once on entry and then resolves against the roles table. Every failure
# resolves to an empty set; nothing here raises.

import re
import uuid
import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import Role

logger = logging.getLogger("tracker.permissions")

PERMISSION_TOKEN_RE = re.compile(r"^[a-z][a-z_]*\.[a-z][a-z_]*$")
# Stored verbatim when assigned; it grants nothing beyond its own literal
LITERAL_WILDCARD = "*"
ADMIN_ROLE_NAME = "admin"


# ============================================================
# CATALOGUE
# ============================================================

PERMISSION_CATALOG: Dict[str, str] = {
    # Users
    "users.create": "Create users",
    "users.read": "View users",
    "users.update": "Update users and their roles",
    "users.delete": "Delete users",
    # Projects
    "projects.create": "Create projects",
    "projects.read": "View projects and their members",
    "projects.update": "Update projects",
    "projects.delete": "Delete projects",
    # Issues
    "issues.create": "Create issues",
    "issues.read": "View issues",
    "issues.update": "Update and move issues",
    "issues.delete": "Delete issues",
    # Sprints
    "sprints.create": "Create sprints",
    "sprints.read": "View sprints",
    "sprints.update": "Update sprints",
    "sprints.delete": "Delete sprints",
    "sprints.generate_reports": "Generate sprint reports",
    "sprints.view_reports": "View sprint reports",
    # Boards
    "boards.read": "View boards",
    "boards.update": "Update boards",
    # Roles
    "roles.create": "Create roles",
    "roles.read": "View roles",
    "roles.update": "Update roles",
    "roles.delete": "Delete roles",
    # Configuration
    "system_config.read": "View system configuration",
    "system_config.update": "Update system configuration",
    "project_config.read": "View project configuration",
    "project_config.update": "Update project configuration",
    # Costs and budgets
    "costs.create": "Create costs",
    "costs.read": "View costs",
    "costs.update": "Update costs",
    "costs.delete": "Delete costs",
    "budgets.create": "Create budgets",
    "budgets.read": "View budgets",
    "budgets.update": "Update budgets",
    "budgets.delete": "Delete budgets",
    # GitHub
    "github.integration": "Manage GitHub integrations",
    "github.webhooks": "Manage GitHub webhook deliveries",
}

DEFAULT_ROLES: List[Dict[str, Any]] = [
    {
        "name": ADMIN_ROLE_NAME,
        "display_name": "Administrator",
        "description": "Full access to every resource",
        "permissions": list(PERMISSION_CATALOG),
    },
    {
        "name": "manager",
        "display_name": "Project Manager",
        "description": "Runs projects, sprints and budgets",
        "permissions": [
            "users.read",
            "projects.create", "projects.read", "projects.update",
            "issues.create", "issues.read", "issues.update", "issues.delete",
            "sprints.create", "sprints.read", "sprints.update", "sprints.delete",
            "sprints.generate_reports", "sprints.view_reports",
            "boards.read", "boards.update",
            "roles.read",
            "system_config.read",
            "project_config.read", "project_config.update",
            "costs.create", "costs.read", "costs.update",
            "budgets.create", "budgets.read", "budgets.update",
            "github.integration", "github.webhooks",
        ],
    },
    {
        "name": "developer",
        "display_name": "Developer",
        "description": "Works on issues and boards",
        "permissions": [
            "projects.read",
            "issues.create", "issues.read", "issues.update",
            "sprints.read",
            "boards.read", "boards.update",
            "costs.read",
            "budgets.read",
        ],
    },
    {
        "name": "viewer",
        "display_name": "Viewer",
        "description": "Read-only access",
        "permissions": [
            "projects.read", "issues.read", "sprints.read",
            "sprints.view_reports", "boards.read",
        ],
    },
]


def invalid_permission_tokens(tokens: Iterable[str]) -> List[str]:
    """Tokens that do not have the ``resource.action`` shape"""
    return [
        t for t in tokens
        if not isinstance(t, str) or (t != LITERAL_WILDCARD and not PERMISSION_TOKEN_RE.match(t))
    ]


# ============================================================
# ROLE REFERENCES
# ============================================================

@dataclass(frozen=True)
class RoleId:
    """Optional tag restricting a lookup to role ids"""
    value: str


@dataclass(frozen=True)
class RoleRef:
    kind: str  # "name_or_id" | "id" | "object" | "invalid"
    value: Any = None


def normalize_role_ref(role_ref: Any) -> RoleRef:
    if role_ref is None:
        return RoleRef("invalid")
    if isinstance(role_ref, RoleId):
        return RoleRef("id", role_ref.value) if role_ref.value else RoleRef("invalid")
    if isinstance(role_ref, uuid.UUID):
        return RoleRef("id", str(role_ref))
    if isinstance(role_ref, str):
        return RoleRef("name_or_id", role_ref) if role_ref.strip() else RoleRef("invalid")
    if hasattr(role_ref, "permissions"):
        return RoleRef("object", role_ref)
    return RoleRef("invalid", role_ref)


def role_name_of(role: Any) -> Optional[str]:
    """Role name from a bare string, a loaded role or a role snapshot"""
    if role is None:
        return None
    if isinstance(role, str):
        return role
    return getattr(role, "name", None)


# ============================================================
# RESOLVER
# ============================================================

def _permissions_of(role: Any) -> FrozenSet[str]:
    if getattr(role, "is_active", True) is False:
        return frozenset()
    perms = getattr(role, "permissions", None) or []
    return frozenset(p for p in perms if isinstance(p, str))


async def _load_role(ref: RoleRef, db: AsyncSession) -> Optional[Role]:
    stmt = select(Role).where(Role.is_active.is_(True))
    if ref.kind == "id":
        result = await db.execute(stmt.where(Role.id == ref.value))
        return result.scalar_one_or_none()

    result = await db.execute(stmt.where(or_(Role.name == ref.value, Role.id == ref.value)))
    candidates = result.scalars().all()
    # A name match wins over an id that happens to look like a name
    for role in candidates:
        if role.name == ref.value:
            return role
    return candidates[0] if candidates else None


async def resolve_role(role_ref: Any, db: Optional[AsyncSession] = None) -> Optional[Any]:
    """Return the role object behind a reference, or None when unresolvable"""
    ref = normalize_role_ref(role_ref)
    if ref.kind == "invalid":
        logger.warning("Malformed role reference: %r", role_ref)
        return None
    if ref.kind == "object":
        return ref.value

    try:
        if db is not None:
            role = await _load_role(ref, db)
        else:
            from database import async_session_maker
            async with async_session_maker() as session:
                role = await _load_role(ref, session)
    except Exception:
        logger.exception("Role lookup failed for %s=%r", ref.kind, ref.value)
        return None

    if role is None:
        logger.warning("Role not found or inactive: %s=%r", ref.kind, ref.value)
    return role


async def resolve_permissions(role_ref: Any, db: Optional[AsyncSession] = None) -> FrozenSet[str]:
    role = await resolve_role(role_ref, db)
    if role is None:
        return frozenset()
    return _permissions_of(role)


async def has_permission(role_ref: Any, permission: str, db: Optional[AsyncSession] = None) -> bool:
    """Exact token membership. Never raises; unresolvable references are denied."""
    try:
        return permission in await resolve_permissions(role_ref, db)
    except Exception:
        logger.exception("Permission check failed for %r", permission)
        return False


async def has_any_permission(role_ref: Any, permissions: Iterable[str], db: Optional[AsyncSession] = None) -> bool:
    try:
        resolved = await resolve_permissions(role_ref, db)
        return any(p in resolved for p in permissions)
    except Exception:
        logger.exception("Permission check failed for %r", permissions)
        return False


# ============================================================
# DEFAULT ROLES
# ============================================================

async def initialize_default_roles(db: AsyncSession, created_by: Optional[str] = None) -> Tuple[List[Role], bool]:
    """Seed system roles once. Returns (system roles, whether they were created)."""
    result = await db.execute(select(Role).where(Role.is_system.is_(True)).order_by(Role.name))
    existing = list(result.scalars().all())
    if existing:
        return existing, False

    roles = []
    for spec in DEFAULT_ROLES:
        role = Role(
            name=spec["name"],
            display_name=spec["display_name"],
            description=spec["description"],
            permissions=list(spec["permissions"]),
            is_system=True,
            is_active=True,
            created_by=created_by,
        )
        db.add(role)
        roles.append(role)
    await db.commit()
    for role in roles:
        await db.refresh(role)

    logger.info("Seeded %d default roles", len(roles))
    return sorted(roles, key=lambda r: r.name), True
