# routers/users.py: user listing, profile updates and role assignment
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from models import User, Role
from permissions import RoleId, resolve_role

logger = logging.getLogger("tracker.users")

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    role_id: Optional[str] = None
    role: Optional[str] = None
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: str


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    avatar_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("name", "is_active")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


class RoleAssignment(BaseModel):
    role_id: Optional[str] = None
    role_name: Optional[str] = None


# --- Helpers ---

def _user_to_out(u: User, role_names: dict) -> UserOut:
    return UserOut(
        id=u.id,
        name=u.name,
        email=u.email,
        avatar_url=u.avatar_url,
        role_id=u.role_id,
        role=role_names.get(u.role_id),
        is_active=bool(u.is_active),
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
    )


async def _role_names(db: AsyncSession) -> dict:
    result = await db.execute(select(Role.id, Role.name))
    return dict(result.all())


async def _get_user_or_404(user_id: str, db: AsyncSession) -> User:
    target = await db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return target


# --- Endpoints ---

@router.get("", response_model=List[UserOut])
async def list_users(
    user: CurrentUser = Depends(require_permission("users.read")),
    db: AsyncSession = Depends(get_db_session),
    limit: int = Query(default=50, le=200),
    offset: int = Query(default=0, ge=0),
    active_only: bool = True,
):
    stmt = select(User).order_by(User.created_at.desc()).offset(offset).limit(limit)
    if active_only:
        stmt = stmt.where(User.is_active == True)
    result = await db.execute(stmt)
    names = await _role_names(db)
    return [_user_to_out(u, names) for u in result.scalars().all()]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    user: CurrentUser = Depends(require_permission("users.read")),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _get_user_or_404(user_id, db)
    return _user_to_out(target, await _role_names(db))


@router.put("/{user_id}/role", response_model=UserOut)
async def assign_role(
    user_id: str,
    body: RoleAssignment,
    user: CurrentUser = Depends(require_permission("users.update")),
    db: AsyncSession = Depends(get_db_session),
):
    """Point the user at another role; permissions follow on the next request"""
    if not body.role_id and not body.role_name:
        raise HTTPException(status_code=400, detail="role_id or role_name is required")

    target = await _get_user_or_404(user_id, db)
    role = await resolve_role(RoleId(body.role_id) if body.role_id else body.role_name, db)
    if role is None:
        raise HTTPException(status_code=400, detail="Role not found or inactive")

    target.role_id = role.id
    await db.commit()
    await db.refresh(target)
    logger.info("User %s assigned role %s by %s", target.id, role.name, user.id)
    return _user_to_out(target, await _role_names(db))


@router.patch("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    body: UserUpdate,
    user: CurrentUser = Depends(require_permission("users.update")),
    db: AsyncSession = Depends(get_db_session),
):
    target = await _get_user_or_404(user_id, db)
    for field, value in body.model_dump(exclude_unset=True).items():
        setattr(target, field, value)
    await db.commit()
    await db.refresh(target)
    return _user_to_out(target, await _role_names(db))
