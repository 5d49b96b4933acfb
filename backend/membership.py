# membership.py: project-scoped roles (admin / editor / assignee)
import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException

from auth import CurrentUser
from models import Project, ProjectRole
from permissions import ADMIN_ROLE_NAME, role_name_of

logger = logging.getLogger("tracker.membership")


def find_member(project: Project, user_id: str) -> Optional[Dict[str, Any]]:
    for member in project.members or []:
        if member.get("user_id") == user_id:
            return member
    return None


def get_user_project_role(project: Project, user_id: str) -> Optional[ProjectRole]:
    """Membership role, else admin for the owner, else None"""
    member = find_member(project, user_id)
    if member is not None:
        try:
            return ProjectRole(member.get("role"))
        except ValueError:
            logger.warning("Project %s has member %s with unknown role %r", project.id, user_id, member.get("role"))
            return None
    if user_id == project.owner_id:
        return ProjectRole.ADMIN
    return None


def is_system_admin(user: Any) -> bool:
    role = user.role if hasattr(user, "role") else user
    return role_name_of(role) == ADMIN_ROLE_NAME


def effective_project_role(project: Project, user: CurrentUser) -> Optional[ProjectRole]:
    """Project role including the global-admin bypass, which is logged"""
    if is_system_admin(user):
        logger.info("Global admin %s bypassing membership checks on project %s", user.id, project.id)
        return ProjectRole.ADMIN
    return get_user_project_role(project, user.id)


def require_project_admin(project: Project, user: CurrentUser) -> ProjectRole:
    role = effective_project_role(project, user)
    if role != ProjectRole.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={
                "message": "Project admin role required",
                "required": ProjectRole.ADMIN.value,
                "current_role": role.value if role else None,
            },
        )
    return role


def add_member(project: Project, user_id: str, role: ProjectRole = ProjectRole.ASSIGNEE) -> Dict[str, Any]:
    if find_member(project, user_id) is not None:
        raise HTTPException(status_code=400, detail="User is already a member of this project")
    entry = {"user_id": user_id, "role": role.value}
    # Reassign so the JSON column is flagged as changed
    project.members = list(project.members or []) + [entry]
    return entry


def update_member(project: Project, user_id: str, role: ProjectRole) -> Dict[str, Any]:
    members: List[Dict[str, Any]] = [dict(m) for m in project.members or []]
    for member in members:
        if member.get("user_id") == user_id:
            member["role"] = role.value
            project.members = members
            return member
    raise HTTPException(status_code=404, detail="Member not found")


def remove_member(project: Project, user_id: str) -> Dict[str, Any]:
    member = find_member(project, user_id)
    if member is None:
        raise HTTPException(status_code=404, detail="Member not found")
    project.members = [m for m in project.members or [] if m.get("user_id") != user_id]
    return member


def parse_project_role(value: Optional[str]) -> ProjectRole:
    if value is None:
        return ProjectRole.ASSIGNEE
    try:
        return ProjectRole(value)
    except ValueError:
        valid = ", ".join(r.value for r in ProjectRole)
        raise HTTPException(status_code=400, detail=f"Invalid project role '{value}'. Must be one of: {valid}")
