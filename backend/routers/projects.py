# routers/projects.py: projects and project membership
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity
from auth import authorize, get_current_user, require_permission, CurrentUser
from database import get_db_session
from membership import (
    add_member, update_member, remove_member, parse_project_role,
    require_project_admin, get_user_project_role, is_system_admin,
)
from models import Project, User, BoardType, ProjectStatus, ProjectRole

logger = logging.getLogger("tracker.projects")

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])


# --- Schemas ---

class ProjectCreate(BaseModel):
    key: str = Field(..., min_length=2, max_length=10)
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    board_type: BoardType = BoardType.KANBAN

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        v = v.strip().upper()
        if not v.isalpha() or not v.isascii():
            raise ValueError("Project key must contain letters only")
        return v


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    board_type: Optional[BoardType] = None
    status: Optional[ProjectStatus] = None

    @field_validator("name", "board_type", "status")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


class MemberAdd(BaseModel):
    user_id: str
    role: Optional[str] = None


class MemberUpdate(BaseModel):
    role: str


# --- Helpers ---

def _project_to_dict(p: Project, user: Optional[CurrentUser] = None) -> dict:
    data = {
        "id": p.id,
        "key": p.key,
        "name": p.name,
        "description": p.description,
        "owner_id": p.owner_id,
        "members": list(p.members or []),
        "board_type": p.board_type.value if isinstance(p.board_type, BoardType) else p.board_type,
        "status": p.status.value if isinstance(p.status, ProjectStatus) else p.status,
        "created_at": p.created_at.isoformat() if p.created_at else None,
        "updated_at": p.updated_at.isoformat() if p.updated_at else None,
    }
    if user is not None:
        role = get_user_project_role(p, user.id)
        data["my_role"] = role.value if role else None
    return data


async def _get_project_or_404(project_id: str, db: AsyncSession) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


# --- Projects ---

@router.post("", status_code=201)
async def create_project(
    body: ProjectCreate,
    user: CurrentUser = Depends(authorize("admin", "manager")),
    db: AsyncSession = Depends(get_db_session),
):
    existing = await db.execute(select(Project).where(Project.key == body.key))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=409, detail=f"Project key '{body.key}' already exists")

    project = Project(
        key=body.key,
        name=body.name,
        description=body.description,
        board_type=body.board_type,
        owner_id=user.id,
        members=[{"user_id": user.id, "role": ProjectRole.ADMIN.value}],
    )
    db.add(project)
    await db.flush()
    record_activity(db, "project_created", actor_id=user.id, project_id=project.id,
                    details={"key": project.key, "name": project.name})
    await db.commit()
    await db.refresh(project)
    logger.info("Project %s created by %s", project.key, user.id)
    return _project_to_dict(project, user)


@router.get("")
async def list_projects(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Projects the caller owns or belongs to; global admins see every project"""
    result = await db.execute(select(Project).order_by(Project.created_at.desc()))
    projects = result.scalars().all()
    if not is_system_admin(user):
        projects = [p for p in projects if get_user_project_role(p, user.id) is not None]
    return [_project_to_dict(p, user) for p in projects]


@router.get("/{project_id}")
async def get_project(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _project_to_dict(await _get_project_or_404(project_id, db), user)


@router.patch("/{project_id}")
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    user: CurrentUser = Depends(authorize("admin", "manager")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    updates = body.model_dump(exclude_unset=True)
    for field, value in updates.items():
        setattr(project, field, value)
    record_activity(db, "project_updated", actor_id=user.id, project_id=project.id,
                    details={"fields": sorted(updates)})
    await db.commit()
    await db.refresh(project)
    return _project_to_dict(project, user)


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: CurrentUser = Depends(authorize("admin")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    record_activity(db, "project_deleted", actor_id=user.id, project_id=project.id,
                    details={"key": project.key})
    await db.delete(project)
    await db.commit()
    logger.info("Project %s deleted by %s", project.key, user.id)
    return {"deleted": True, "id": project_id}


# --- Members ---

@router.get("/{project_id}/members")
async def list_members(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    members = list(project.members or [])
    ids = [m["user_id"] for m in members]
    users = {}
    if ids:
        result = await db.execute(select(User).where(User.id.in_(ids)))
        users = {u.id: u for u in result.scalars().all()}

    out: List[dict] = []
    for m in members:
        u = users.get(m["user_id"])
        out.append({
            "user_id": m["user_id"],
            "role": m.get("role"),
            "name": u.name if u else None,
            "email": u.email if u else None,
        })
    return {"project_id": project.id, "owner_id": project.owner_id, "members": out}


@router.post("/{project_id}/members", status_code=201)
async def add_project_member(
    project_id: str,
    body: MemberAdd,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    require_project_admin(project, user)
    role = parse_project_role(body.role)

    target = await db.get(User, body.user_id)
    if not target:
        raise HTTPException(status_code=400, detail="User not found")

    entry = add_member(project, target.id, role)
    record_activity(db, "member_added", actor_id=user.id, project_id=project.id,
                    details={"user_id": target.id, "role": role.value})
    await db.commit()
    return {"project_id": project.id, "member": entry}


@router.patch("/{project_id}/members/{member_user_id}")
async def update_project_member(
    project_id: str,
    member_user_id: str,
    body: MemberUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    require_project_admin(project, user)
    role = parse_project_role(body.role)

    entry = update_member(project, member_user_id, role)
    record_activity(db, "member_role_updated", actor_id=user.id, project_id=project.id,
                    details={"user_id": member_user_id, "role": role.value})
    await db.commit()
    return {"project_id": project.id, "member": entry}


@router.delete("/{project_id}/members/{member_user_id}")
async def remove_project_member(
    project_id: str,
    member_user_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    project = await _get_project_or_404(project_id, db)
    require_project_admin(project, user)

    entry = remove_member(project, member_user_id)
    record_activity(db, "member_removed", actor_id=user.id, project_id=project.id,
                    details={"user_id": member_user_id, "role": entry.get("role")})
    await db.commit()
    return {"project_id": project.id, "removed": member_user_id}
