# routers/roles.py: dynamic role administration
import re
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from models import Role, User
from permissions import PERMISSION_CATALOG, initialize_default_roles, invalid_permission_tokens

logger = logging.getLogger("tracker.roles")

router = APIRouter(prefix="/api/v1/roles", tags=["Roles"])

ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


# --- Schemas ---

class RoleOut(BaseModel):
    id: str
    name: str
    display_name: str
    description: Optional[str] = None
    permissions: List[str]
    is_system: bool
    is_active: bool
    organization_id: Optional[str] = None
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _check_permissions(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return v
    bad = invalid_permission_tokens(v)
    if bad:
        raise ValueError(f"Invalid permission tokens: {', '.join(map(str, bad))}")
    # Keep first occurrence order, drop repeats
    return list(dict.fromkeys(v))


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: List[str] = []
    is_active: bool = True
    organization_id: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not ROLE_NAME_RE.match(v):
            raise ValueError("Role name must be lowercase letters, digits and underscores, starting with a letter")
        return v

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: List[str]) -> List[str]:
        return _check_permissions(v)


class RoleUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _check_permissions(v)

    @field_validator("display_name", "permissions", "is_active")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


# --- Helpers ---

def _role_to_out(r: Role) -> RoleOut:
    return RoleOut(
        id=r.id,
        name=r.name,
        display_name=r.display_name,
        description=r.description,
        permissions=list(r.permissions or []),
        is_system=bool(r.is_system),
        is_active=bool(r.is_active),
        organization_id=r.organization_id,
        created_by=r.created_by,
        last_modified_by=r.last_modified_by,
        created_at=r.created_at.isoformat() if r.created_at else None,
        updated_at=r.updated_at.isoformat() if r.updated_at else None,
    )


async def _get_role_or_404(role_id: str, db: AsyncSession) -> Role:
    role = await db.get(Role, role_id)
    if not role:
        raise HTTPException(status_code=404, detail="Role not found")
    return role


# --- Endpoints ---

@router.get("", response_model=List[RoleOut])
async def list_roles(
    user: CurrentUser = Depends(require_permission("roles.read")),
    db: AsyncSession = Depends(get_db_session),
    is_active: Optional[bool] = Query(default=None),
    organization_id: Optional[str] = Query(default=None),
):
    stmt = select(Role).order_by(Role.name)
    if is_active is not None:
        stmt = stmt.where(Role.is_active == is_active)
    if organization_id:
        stmt = stmt.where(Role.organization_id == organization_id)
    result = await db.execute(stmt)
    return [_role_to_out(r) for r in result.scalars().all()]


@router.get("/stats")
async def role_stats(
    user: CurrentUser = Depends(require_permission("roles.read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Role counts plus the number of users referencing each role"""
    result = await db.execute(select(Role).order_by(Role.name))
    roles = result.scalars().all()

    count_stmt = (
        select(User.role_id, func.count(User.id))
        .where(User.role_id.is_not(None))
        .group_by(User.role_id)
    )
    counts = dict((await db.execute(count_stmt)).all())

    return {
        "total_roles": len(roles),
        "active_roles": sum(1 for r in roles if r.is_active),
        "system_roles": sum(1 for r in roles if r.is_system),
        "custom_roles": sum(1 for r in roles if not r.is_system),
        "role_usage": [
            {
                "role_id": r.id,
                "name": r.name,
                "display_name": r.display_name,
                "user_count": counts.get(r.id, 0),
            }
            for r in roles
        ],
    }


@router.get("/permissions")
async def list_permissions(
    user: CurrentUser = Depends(require_permission("roles.read")),
):
    """Catalogue of known permission tokens"""
    return [
        {"permission": token, "resource": token.split(".", 1)[0], "description": desc}
        for token, desc in PERMISSION_CATALOG.items()
    ]


@router.post("/initialize")
async def initialize_roles(
    user: CurrentUser = Depends(require_permission("roles.create")),
    db: AsyncSession = Depends(get_db_session),
):
    roles, created = await initialize_default_roles(db, created_by=user.id)
    return {
        "created": created,
        "message": "Default roles initialized" if created else "Default roles already exist",
        "roles": [_role_to_out(r) for r in roles],
    }


@router.get("/{role_id}", response_model=RoleOut)
async def get_role(
    role_id: str,
    user: CurrentUser = Depends(require_permission("roles.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _role_to_out(await _get_role_or_404(role_id, db))


@router.post("", response_model=RoleOut, status_code=201)
async def create_role(
    body: RoleCreate,
    user: CurrentUser = Depends(require_permission("roles.create")),
    db: AsyncSession = Depends(get_db_session),
):
    existing = await db.execute(select(Role).where(Role.name == body.name))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail=f"Role '{body.name}' already exists")

    role = Role(
        name=body.name,
        display_name=body.display_name,
        description=body.description,
        permissions=body.permissions,
        is_system=False,
        is_active=body.is_active,
        organization_id=body.organization_id,
        created_by=user.id,
        last_modified_by=user.id,
    )
    db.add(role)
    await db.commit()
    await db.refresh(role)
    logger.info("Role %s created by %s", role.name, user.id)
    return _role_to_out(role)


@router.put("/{role_id}", response_model=RoleOut)
async def update_role(
    role_id: str,
    body: RoleUpdate,
    user: CurrentUser = Depends(require_permission("roles.update")),
    db: AsyncSession = Depends(get_db_session),
):
    role = await _get_role_or_404(role_id, db)
    if role.is_system:
        raise HTTPException(status_code=400, detail="System roles cannot be modified")

    updates = body.model_dump(exclude_unset=True)
    for field, value in updates.items():
        setattr(role, field, value)
    role.last_modified_by = user.id
    await db.commit()
    await db.refresh(role)
    logger.info("Role %s updated by %s: %s", role.name, user.id, sorted(updates))
    return _role_to_out(role)


@router.delete("/{role_id}")
async def delete_role(
    role_id: str,
    user: CurrentUser = Depends(require_permission("roles.delete")),
    db: AsyncSession = Depends(get_db_session),
):
    role = await _get_role_or_404(role_id, db)
    if role.is_system:
        raise HTTPException(status_code=400, detail="System roles cannot be deleted")

    in_use = (await db.execute(
        select(func.count(User.id)).where(User.role_id == role.id)
    )).scalar() or 0
    if in_use:
        raise HTTPException(
            status_code=400,
            detail=f"Role is assigned to {in_use} user(s) and cannot be deleted",
        )

    await db.delete(role)
    await db.commit()
    logger.info("Role %s deleted by %s", role.name, user.id)
    return {"deleted": True, "id": role_id}
