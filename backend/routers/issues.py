# routers/issues.py: issue CRUD and status moves
import logging
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from activity import record_activity
from auth import require_permission, CurrentUser
from database import get_db_session
from membership import get_user_project_role
from models import Issue, Project, Sprint

logger = logging.getLogger("tracker.issues")

router = APIRouter(prefix="/api/v1/issues", tags=["Issues"])

FIRST_ISSUE_NUMBER = 1001


# --- Schemas ---

class IssueCreate(BaseModel):
    project_id: str
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    issue_type: str = Field(default="task", pattern=r"^(bug|story|task|subtask|epic)$")
    status: str = Field(default="backlog", min_length=1, max_length=50)
    priority: str = Field(default="medium", pattern=r"^(lowest|low|medium|high|highest)$")
    assignees: List[str] = []
    story_points: int = Field(default=0, ge=0)
    tags: List[str] = []
    github_issue_number: Optional[int] = Field(default=None, ge=1)
    sprint_id: Optional[str] = None


class IssueUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=300)
    description: Optional[str] = None
    issue_type: Optional[str] = Field(default=None, pattern=r"^(bug|story|task|subtask|epic)$")
    priority: Optional[str] = Field(default=None, pattern=r"^(lowest|low|medium|high|highest)$")
    assignees: Optional[List[str]] = None
    story_points: Optional[int] = Field(default=None, ge=0)
    tags: Optional[List[str]] = None
    github_issue_number: Optional[int] = Field(default=None, ge=1)
    sprint_id: Optional[str] = None

    @field_validator("title", "issue_type", "priority", "assignees", "tags")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


class IssueMove(BaseModel):
    status: str = Field(..., min_length=1, max_length=50)


# --- Helpers ---

def _issue_to_dict(i: Issue) -> dict:
    return {
        "id": i.id,
        "key": i.key,
        "title": i.title,
        "description": i.description,
        "issue_type": i.issue_type,
        "status": i.status,
        "priority": i.priority,
        "project_id": i.project_id,
        "reporter_id": i.reporter_id,
        "assignees": list(i.assignees or []),
        "story_points": i.story_points,
        "tags": list(i.tags or []),
        "github_issue_number": i.github_issue_number,
        "sprint_id": i.sprint_id,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "updated_at": i.updated_at.isoformat() if i.updated_at else None,
    }


async def _get_issue_or_404(issue_id: str, db: AsyncSession) -> Issue:
    issue = await db.get(Issue, issue_id)
    if not issue:
        raise HTTPException(status_code=404, detail="Issue not found")
    return issue


def _check_assignees(project: Project, assignees: List[str]) -> List[str]:
    outsiders = [a for a in assignees if get_user_project_role(project, a) is None]
    if outsiders:
        raise HTTPException(
            status_code=400,
            detail=f"Assignees must be project members: {', '.join(outsiders)}",
        )
    return list(dict.fromkeys(assignees))


async def _check_sprint(project_id: str, sprint_id: Optional[str], db: AsyncSession) -> Optional[str]:
    if sprint_id is None:
        return None
    sprint = await db.get(Sprint, sprint_id)
    if not sprint or sprint.project_id != project_id:
        raise HTTPException(status_code=400, detail="Sprint does not belong to this project")
    return sprint.id


async def _next_issue_key(project: Project, db: AsyncSession) -> str:
    result = await db.execute(select(Issue.key).where(Issue.project_id == project.id))
    numbers = []
    for key in result.scalars().all():
        suffix = key.rsplit("-", 1)[-1]
        if suffix.isdigit():
            numbers.append(int(suffix))
    next_number = max(numbers) + 1 if numbers else FIRST_ISSUE_NUMBER
    return f"{project.key}-{next_number}"


# --- Endpoints ---

@router.post("", status_code=201)
async def create_issue(
    body: IssueCreate,
    user: CurrentUser = Depends(require_permission("issues.create")),
    db: AsyncSession = Depends(get_db_session),
):
    project = await db.get(Project, body.project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    issue = Issue(
        key=await _next_issue_key(project, db),
        title=body.title,
        description=body.description,
        issue_type=body.issue_type,
        status=body.status,
        priority=body.priority,
        project_id=project.id,
        reporter_id=user.id,
        assignees=_check_assignees(project, body.assignees),
        story_points=body.story_points,
        tags=body.tags,
        github_issue_number=body.github_issue_number,
        sprint_id=await _check_sprint(project.id, body.sprint_id, db),
    )
    db.add(issue)
    await db.flush()
    record_activity(db, "issue_created", actor_id=user.id, project_id=project.id,
                    issue_id=issue.id, details={"key": issue.key})
    await db.commit()
    await db.refresh(issue)
    return _issue_to_dict(issue)


@router.get("")
async def list_issues(
    user: CurrentUser = Depends(require_permission("issues.read")),
    db: AsyncSession = Depends(get_db_session),
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    issue_type: Optional[str] = None,
    priority: Optional[str] = None,
    assignee: Optional[str] = None,
    sprint_id: Optional[str] = None,
    q: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    stmt = select(Issue)
    if project_id:
        stmt = stmt.where(Issue.project_id == project_id)
    if status:
        stmt = stmt.where(Issue.status == status)
    if issue_type:
        stmt = stmt.where(Issue.issue_type == issue_type)
    if priority:
        stmt = stmt.where(Issue.priority == priority)
    if sprint_id:
        stmt = stmt.where(Issue.sprint_id == sprint_id)
    if q:
        pattern = f"%{q}%"
        stmt = stmt.where(or_(Issue.title.ilike(pattern), Issue.key.ilike(pattern)))

    if assignee:
        # JSON list membership is filtered in Python to stay portable across backends
        result = await db.execute(stmt.order_by(Issue.created_at.desc()))
        rows = [i for i in result.scalars().all() if assignee in (i.assignees or [])]
        total = len(rows)
        items = rows[(page - 1) * limit: page * limit]
    else:
        total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
        result = await db.execute(
            stmt.order_by(Issue.created_at.desc()).offset((page - 1) * limit).limit(limit)
        )
        items = result.scalars().all()

    return {
        "items": [_issue_to_dict(i) for i in items],
        "total": total,
        "page": page,
        "limit": limit,
        "pages": (total + limit - 1) // limit,
    }


@router.get("/{issue_id}")
async def get_issue(
    issue_id: str,
    user: CurrentUser = Depends(require_permission("issues.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _issue_to_dict(await _get_issue_or_404(issue_id, db))


@router.patch("/{issue_id}")
async def update_issue(
    issue_id: str,
    body: IssueUpdate,
    user: CurrentUser = Depends(require_permission("issues.update")),
    db: AsyncSession = Depends(get_db_session),
):
    issue = await _get_issue_or_404(issue_id, db)
    updates = body.model_dump(exclude_unset=True)
    if "assignees" in updates:
        project = await db.get(Project, issue.project_id)
        updates["assignees"] = _check_assignees(project, updates["assignees"] or [])
    if "sprint_id" in updates:
        updates["sprint_id"] = await _check_sprint(issue.project_id, updates["sprint_id"], db)
    for field, value in updates.items():
        setattr(issue, field, value)
    record_activity(db, "issue_updated", actor_id=user.id, project_id=issue.project_id,
                    issue_id=issue.id, details={"fields": sorted(updates)})
    await db.commit()
    await db.refresh(issue)
    return _issue_to_dict(issue)


@router.post("/{issue_id}/move")
async def move_issue(
    issue_id: str,
    body: IssueMove,
    user: CurrentUser = Depends(require_permission("issues.update")),
    db: AsyncSession = Depends(get_db_session),
):
    issue = await _get_issue_or_404(issue_id, db)
    old_status = issue.status
    issue.status = body.status
    record_activity(db, "issue_transitioned", actor_id=user.id, project_id=issue.project_id,
                    issue_id=issue.id, details={"from": old_status, "to": body.status, "source": "board"})
    await db.commit()
    await db.refresh(issue)
    return _issue_to_dict(issue)


@router.delete("/{issue_id}")
async def delete_issue(
    issue_id: str,
    user: CurrentUser = Depends(require_permission("issues.delete")),
    db: AsyncSession = Depends(get_db_session),
):
    issue = await _get_issue_or_404(issue_id, db)
    record_activity(db, "issue_deleted", actor_id=user.id, project_id=issue.project_id,
                    issue_id=issue.id, details={"key": issue.key})
    await db.delete(issue)
    await db.commit()
    return {"deleted": True, "id": issue_id}
