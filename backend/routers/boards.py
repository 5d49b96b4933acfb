# routers/boards.py: project board, issues grouped into status columns
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from models import BoardType, Issue, Project
from routers.issues import _issue_to_dict
from routers.project_config import find_project_config
from routers.system_config import get_or_create_config

logger = logging.getLogger("tracker.boards")

router = APIRouter(prefix="/api/v1/boards", tags=["Boards"])

FALLBACK_STATUSES = ["backlog", "analysis_ready", "analysis", "development", "acceptance", "released"]

# Issue type whose system workflow drives the board when a project has no configuration
BOARD_ISSUE_TYPE = "task"


def _column(name: str, label: Optional[str], order: int, color: Optional[str] = None) -> dict:
    return {"name": name, "display_name": label or name.replace("_", " ").title(),
            "order": order, "color": color}


def _from_project_statuses(statuses: List[dict]) -> List[dict]:
    active = [s for s in statuses if s.get("is_active", True) and s.get("name")]
    active.sort(key=lambda s: s.get("order", 0))
    return [_column(s["name"], s.get("display_name"), s.get("order", i), s.get("color"))
            for i, s in enumerate(active, start=1)]


def _from_workflow_template(templates: List[dict]) -> List[dict]:
    for template in templates or []:
        if (template.get("is_default") and template.get("is_active", True)
                and BOARD_ISSUE_TYPE in template.get("issue_types", [])):
            statuses = [s for s in template.get("statuses", []) if s.get("is_active", True)]
            statuses.sort(key=lambda s: s.get("order", 0))
            return [_column(s["value"], s.get("label"), s.get("order", i), s.get("color"))
                    for i, s in enumerate(statuses, start=1)]
    return []


@router.get("/{project_id}")
async def get_board(
    project_id: str,
    user: CurrentUser = Depends(require_permission("boards.read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Board columns come from the project configuration, then the default system workflow"""
    project = await db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    project_config = await find_project_config(project.id, db)
    columns = _from_project_statuses(project_config.statuses) if project_config else []
    using_default = not columns
    if using_default:
        system = await get_or_create_config(db)
        columns = _from_workflow_template(system.workflow_templates)
    if not columns:
        columns = [_column(name, None, i) for i, name in enumerate(FALLBACK_STATUSES, start=1)]

    result = await db.execute(
        select(Issue).where(Issue.project_id == project.id).order_by(Issue.created_at)
    )
    grouped = {c["name"]: [] for c in columns}
    unplaced = []
    for issue in result.scalars().all():
        grouped.get(issue.status, unplaced).append(_issue_to_dict(issue))
    if unplaced:
        logger.debug("Board %s: %d issue(s) outside the board statuses", project.key, len(unplaced))

    return {
        "project": {
            "id": project.id,
            "key": project.key,
            "name": project.name,
            "board_type": project.board_type.value if isinstance(project.board_type, BoardType) else project.board_type,
        },
        "statuses": columns,
        "columns": grouped,
        "unplaced": unplaced,
        "config": {
            "has_project_config": project_config is not None,
            "is_using_default": using_default,
        },
    }
