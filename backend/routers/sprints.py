# routers/sprints.py: sprint lifecycle and sprint membership of issues
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity
from auth import require_permission, CurrentUser
from database import get_db_session
from models import Issue, Project, Sprint, utcnow

logger = logging.getLogger("tracker.sprints")

router = APIRouter(prefix="/api/v1/sprints", tags=["Sprints"])

# Issues in these statuses stay attached when a sprint completes
DONE_STATUSES = {"done", "released", "completed"}


# --- Schemas ---

class SprintCreate(BaseModel):
    project_id: str
    name: str = Field(..., min_length=1, max_length=100)
    goal: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class SprintUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    goal: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("name")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


# --- Helpers ---

def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _sprint_to_dict(s: Sprint) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "name": s.name,
        "goal": s.goal,
        "start_date": s.start_date.isoformat() if s.start_date else None,
        "end_date": s.end_date.isoformat() if s.end_date else None,
        "is_active": s.is_active,
        "completed_at": s.completed_at.isoformat() if s.completed_at else None,
        "created_by": s.created_by,
        "created_at": s.created_at.isoformat() if s.created_at else None,
        "updated_at": s.updated_at.isoformat() if s.updated_at else None,
    }


async def _get_sprint_or_404(sprint_id: str, db: AsyncSession) -> Sprint:
    sprint = await db.get(Sprint, sprint_id)
    if not sprint:
        raise HTTPException(status_code=404, detail="Sprint not found")
    return sprint


def _check_dates(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start and end and _as_utc(start) > _as_utc(end):
        raise HTTPException(status_code=400, detail="Start date must be before end date")


async def _check_name_free(project_id: str, name: str, db: AsyncSession,
                           exclude_id: Optional[str] = None) -> None:
    stmt = select(Sprint.id).where(Sprint.project_id == project_id, Sprint.name == name)
    if exclude_id:
        stmt = stmt.where(Sprint.id != exclude_id)
    if (await db.execute(stmt)).first():
        raise HTTPException(status_code=409, detail=f"Sprint '{name}' already exists in this project")


async def _sprint_issues(sprint: Sprint, db: AsyncSession):
    result = await db.execute(select(Issue).where(Issue.sprint_id == sprint.id))
    return result.scalars().all()


# --- Endpoints ---

@router.post("", status_code=201)
async def create_sprint(
    body: SprintCreate,
    user: CurrentUser = Depends(require_permission("sprints.create")),
    db: AsyncSession = Depends(get_db_session),
):
    if not await db.get(Project, body.project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    _check_dates(body.start_date, body.end_date)
    await _check_name_free(body.project_id, body.name, db)

    sprint = Sprint(
        project_id=body.project_id,
        name=body.name,
        goal=body.goal,
        start_date=body.start_date,
        end_date=body.end_date,
        created_by=user.id,
    )
    db.add(sprint)
    await db.flush()
    record_activity(db, "sprint_created", actor_id=user.id, project_id=sprint.project_id,
                    details={"sprint_id": sprint.id, "name": sprint.name})
    await db.commit()
    await db.refresh(sprint)
    logger.info("Sprint '%s' created in project %s", sprint.name, sprint.project_id)
    return _sprint_to_dict(sprint)


@router.get("")
async def list_sprints(
    user: CurrentUser = Depends(require_permission("sprints.read")),
    db: AsyncSession = Depends(get_db_session),
    project_id: Optional[str] = None,
    active: Optional[bool] = None,
):
    stmt = select(Sprint)
    if project_id:
        stmt = stmt.where(Sprint.project_id == project_id)
    if active is not None:
        stmt = stmt.where(Sprint.is_active.is_(active))
    result = await db.execute(stmt.order_by(Sprint.created_at.desc()))
    return [_sprint_to_dict(s) for s in result.scalars().all()]


@router.get("/{sprint_id}")
async def get_sprint(
    sprint_id: str,
    user: CurrentUser = Depends(require_permission("sprints.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _sprint_to_dict(await _get_sprint_or_404(sprint_id, db))


@router.get("/{sprint_id}/summary")
async def sprint_summary(
    sprint_id: str,
    user: CurrentUser = Depends(require_permission("sprints.read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue counts per status for one sprint"""
    sprint = await _get_sprint_or_404(sprint_id, db)
    issues = await _sprint_issues(sprint, db)
    by_status = Counter(i.status for i in issues)
    done = sum(count for status, count in by_status.items() if status in DONE_STATUSES)
    return {
        "sprint": _sprint_to_dict(sprint),
        "total_issues": len(issues),
        "by_status": dict(by_status),
        "done_issues": done,
        "remaining_issues": len(issues) - done,
        "story_points": sum(i.story_points or 0 for i in issues),
    }


@router.patch("/{sprint_id}")
async def update_sprint(
    sprint_id: str,
    body: SprintUpdate,
    user: CurrentUser = Depends(require_permission("sprints.update")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await _get_sprint_or_404(sprint_id, db)
    updates = body.model_dump(exclude_unset=True)
    _check_dates(updates.get("start_date", sprint.start_date), updates.get("end_date", sprint.end_date))
    if "name" in updates and updates["name"] != sprint.name:
        await _check_name_free(sprint.project_id, updates["name"], db, exclude_id=sprint.id)

    for field, value in updates.items():
        setattr(sprint, field, value)
    record_activity(db, "sprint_updated", actor_id=user.id, project_id=sprint.project_id,
                    details={"sprint_id": sprint.id, "fields": sorted(updates)})
    await db.commit()
    await db.refresh(sprint)
    return _sprint_to_dict(sprint)


@router.delete("/{sprint_id}")
async def delete_sprint(
    sprint_id: str,
    user: CurrentUser = Depends(require_permission("sprints.delete")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await _get_sprint_or_404(sprint_id, db)
    for issue in await _sprint_issues(sprint, db):
        issue.sprint_id = None
    record_activity(db, "sprint_deleted", actor_id=user.id, project_id=sprint.project_id,
                    details={"sprint_id": sprint.id, "name": sprint.name})
    await db.delete(sprint)
    await db.commit()
    return {"deleted": True, "id": sprint_id}


@router.post("/{sprint_id}/start")
async def start_sprint(
    sprint_id: str,
    user: CurrentUser = Depends(require_permission("sprints.update")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await _get_sprint_or_404(sprint_id, db)
    if sprint.completed_at:
        raise HTTPException(status_code=400, detail="Sprint is already completed")
    if sprint.is_active:
        raise HTTPException(status_code=400, detail="Sprint is already active")

    sprint.is_active = True
    sprint.start_date = utcnow()
    record_activity(db, "sprint_started", actor_id=user.id, project_id=sprint.project_id,
                    details={"sprint_id": sprint.id, "name": sprint.name})
    await db.commit()
    await db.refresh(sprint)
    return _sprint_to_dict(sprint)


@router.post("/{sprint_id}/complete")
async def complete_sprint(
    sprint_id: str,
    user: CurrentUser = Depends(require_permission("sprints.update")),
    db: AsyncSession = Depends(get_db_session),
):
    """Close the sprint and release its unfinished issues back to the backlog"""
    sprint = await _get_sprint_or_404(sprint_id, db)
    if sprint.completed_at:
        raise HTTPException(status_code=400, detail="Sprint is already completed")

    detached = []
    for issue in await _sprint_issues(sprint, db):
        if issue.status not in DONE_STATUSES:
            issue.sprint_id = None
            detached.append(issue.key)

    sprint.is_active = False
    sprint.completed_at = utcnow()
    record_activity(db, "sprint_completed", actor_id=user.id, project_id=sprint.project_id,
                    details={"sprint_id": sprint.id, "name": sprint.name, "detached": detached})
    await db.commit()
    await db.refresh(sprint)
    logger.info("Sprint %s completed; %d unfinished issue(s) detached", sprint.id, len(detached))
    return {**_sprint_to_dict(sprint), "detached_issues": sorted(detached)}


@router.post("/{sprint_id}/issues/{issue_id}")
async def add_issue_to_sprint(
    sprint_id: str,
    issue_id: str,
    user: CurrentUser = Depends(require_permission("sprints.update")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await _get_sprint_or_404(sprint_id, db)
    issue = await db.get(Issue, issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    if issue.project_id != sprint.project_id:
        raise HTTPException(status_code=400, detail="Issue belongs to a different project")
    if sprint.completed_at:
        raise HTTPException(status_code=400, detail="Sprint is already completed")

    issue.sprint_id = sprint.id
    record_activity(db, "sprint_issue_added", actor_id=user.id, project_id=sprint.project_id,
                    issue_id=issue.id, details={"sprint_id": sprint.id, "key": issue.key})
    await db.commit()
    return {"sprint_id": sprint.id, "issue_id": issue.id, "key": issue.key}


@router.delete("/{sprint_id}/issues/{issue_id}")
async def remove_issue_from_sprint(
    sprint_id: str,
    issue_id: str,
    user: CurrentUser = Depends(require_permission("sprints.update")),
    db: AsyncSession = Depends(get_db_session),
):
    sprint = await _get_sprint_or_404(sprint_id, db)
    issue = await db.get(Issue, issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    if issue.sprint_id != sprint.id:
        raise HTTPException(status_code=400, detail="Issue is not in this sprint")

    issue.sprint_id = None
    record_activity(db, "sprint_issue_removed", actor_id=user.id, project_id=sprint.project_id,
                    issue_id=issue.id, details={"sprint_id": sprint.id, "key": issue.key})
    await db.commit()
    return {"sprint_id": sprint.id, "issue_id": issue.id, "removed": True}
