# routers/project_config.py: per-project issue types, custom fields, statuses and priorities
import logging
from copy import deepcopy
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity
from auth import require_permission, CurrentUser
from database import get_db_session
from models import Project, ProjectConfig
from routers.system_config import get_or_create_config

logger = logging.getLogger("tracker.project_config")

router = APIRouter(prefix="/api/v1/project-config", tags=["Project Configuration"])

_STANDARD_FLOW = ["backlog", "analysis_ready", "analysis", "development", "acceptance", "released"]
_SUBTASK_FLOW = ["backlog", "development", "code_review", "qa", "deployment", "released"]


def _issue_type(name: str, label: str, icon: str, color: str, workflow: List[str],
                is_default: bool = False) -> dict:
    return {"name": name, "display_name": label, "icon": icon, "color": color,
            "workflow": list(workflow), "is_default": is_default, "is_active": True}


DEFAULT_ISSUE_TYPES = [
    _issue_type("task", "Task", "task", "#4caf50", _STANDARD_FLOW, is_default=True),
    _issue_type("bug", "Bug", "bug", "#f44336", _STANDARD_FLOW),
    _issue_type("story", "Story", "story", "#2196f3", _STANDARD_FLOW),
    _issue_type("subtask", "Subtask", "subtask", "#9e9e9e", _SUBTASK_FLOW),
]

DEFAULT_CUSTOM_FIELDS = [
    {"name": name, "display_name": label, "field_type": ftype, "is_required": False, "is_active": True}
    for name, label, ftype in [
        ("acceptance_criteria", "Acceptance Criteria", "textarea"),
        ("test_plan", "Test Plan", "textarea"),
        ("start_date", "Start Date", "date"),
        ("end_date", "End Date", "date"),
        ("estimate", "Estimate (hours)", "number"),
        ("actual_hours", "Actual Hours", "number"),
    ]
]

DEFAULT_STATUSES = [
    {"name": name, "display_name": label, "order": order, "is_default": order == 1, "is_active": True}
    for order, (name, label) in enumerate([
        ("backlog", "Backlog"),
        ("analysis_ready", "Analysis Ready"),
        ("analysis", "Analysis"),
        ("development", "Development"),
        ("code_review", "Code Review"),
        ("qa", "QA"),
        ("deployment", "Deployment"),
        ("acceptance", "Acceptance"),
        ("released", "Released"),
    ], start=1)
]

DEFAULT_PRIORITIES = [
    {"name": name, "display_name": label, "level": level, "color": color,
     "is_default": name == "medium", "is_active": True}
    for name, label, level, color in [
        ("low", "Low", 1, "#4caf50"),
        ("medium", "Medium", 2, "#ff9800"),
        ("high", "High", 3, "#f44336"),
        ("critical", "Critical", 4, "#9c27b0"),
    ]
]


# --- Schemas ---

class ProjectConfigUpdate(BaseModel):
    issue_types: Optional[List[Dict[str, Any]]] = None
    custom_fields: Optional[List[Dict[str, Any]]] = None
    statuses: Optional[List[Dict[str, Any]]] = None
    priorities: Optional[List[Dict[str, Any]]] = None

    @field_validator("issue_types", "custom_fields", "statuses", "priorities")
    @classmethod
    def named_entries(cls, v):
        if v is None:
            raise ValueError("may not be null")
        for entry in v:
            if not isinstance(entry.get("name"), str) or not entry["name"]:
                raise ValueError("every entry needs a non-empty 'name'")
        names = [entry["name"] for entry in v]
        if len(set(names)) != len(names):
            raise ValueError("entry names must be unique")
        return v


# --- Helpers ---

def _defaults() -> dict:
    return {
        "issue_types": deepcopy(DEFAULT_ISSUE_TYPES),
        "custom_fields": deepcopy(DEFAULT_CUSTOM_FIELDS),
        "statuses": deepcopy(DEFAULT_STATUSES),
        "priorities": deepcopy(DEFAULT_PRIORITIES),
    }


def _active(entries: List[dict]) -> List[dict]:
    return [e for e in entries or [] if e.get("is_active", True)]


def _config_to_dict(c: ProjectConfig) -> dict:
    return {
        "id": c.id,
        "project_id": c.project_id,
        "issue_types": c.issue_types,
        "custom_fields": c.custom_fields,
        "statuses": sorted(c.statuses or [], key=lambda s: s.get("order", 0)),
        "priorities": c.priorities,
        "version": c.version,
        "last_modified_by": c.last_modified_by,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


async def find_project_config(project_id: str, db: AsyncSession) -> Optional[ProjectConfig]:
    result = await db.execute(select(ProjectConfig).where(ProjectConfig.project_id == project_id))
    return result.scalar_one_or_none()


async def _require_project(project_id: str, db: AsyncSession) -> Project:
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def _create_default(project_id: str, user_id: str, db: AsyncSession) -> ProjectConfig:
    """Insert the default vocabulary; a losing concurrent insert re-reads the winner"""
    db.add(ProjectConfig(project_id=project_id, last_modified_by=user_id, **_defaults()))
    try:
        await db.commit()
        logger.info("Created default configuration for project %s", project_id)
    except IntegrityError:
        await db.rollback()
    return await find_project_config(project_id, db)


# --- Endpoints ---

@router.get("/field-types")
async def list_field_types(
    user: CurrentUser = Depends(require_permission("project_config.read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Field types a custom field may use, from the system configuration"""
    config = await get_or_create_config(db)
    return _active(config.field_types)


@router.get("/{project_id}")
async def get_project_config(
    project_id: str,
    user: CurrentUser = Depends(require_permission("project_config.read")),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_project(project_id, db)
    config = await find_project_config(project_id, db)
    if config is None:
        config = await _create_default(project_id, user.id, db)
    return _config_to_dict(config)


@router.post("/{project_id}/initialize", status_code=201)
async def initialize_project_config(
    project_id: str,
    user: CurrentUser = Depends(require_permission("project_config.update")),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_project(project_id, db)
    if await find_project_config(project_id, db):
        raise HTTPException(status_code=400, detail="Project configuration already exists")
    config = await _create_default(project_id, user.id, db)
    return _config_to_dict(config)


@router.patch("/{project_id}")
async def update_project_config(
    project_id: str,
    body: ProjectConfigUpdate,
    user: CurrentUser = Depends(require_permission("project_config.update")),
    db: AsyncSession = Depends(get_db_session),
):
    await _require_project(project_id, db)
    config = await find_project_config(project_id, db)
    if config is None:
        config = await _create_default(project_id, user.id, db)

    updates = body.model_dump(exclude_unset=True)
    for field, value in updates.items():
        setattr(config, field, value)
    config.version = (config.version or 0) + 1
    config.last_modified_by = user.id
    record_activity(db, "project_config_updated", actor_id=user.id, project_id=project_id,
                    details={"fields": sorted(updates), "version": config.version})
    await db.commit()
    await db.refresh(config)
    return _config_to_dict(config)


@router.get("/{project_id}/issue-types")
async def list_issue_types(
    project_id: str,
    user: CurrentUser = Depends(require_permission("project_config.read")),
    db: AsyncSession = Depends(get_db_session),
):
    config = await find_project_config(project_id, db)
    return _active(config.issue_types if config else DEFAULT_ISSUE_TYPES)


@router.get("/{project_id}/priorities")
async def list_priorities(
    project_id: str,
    user: CurrentUser = Depends(require_permission("project_config.read")),
    db: AsyncSession = Depends(get_db_session),
):
    config = await find_project_config(project_id, db)
    return sorted(_active(config.priorities if config else DEFAULT_PRIORITIES),
                  key=lambda p: p.get("level", 0))
