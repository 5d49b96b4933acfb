# activity.py: activity-log sink
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import ActivityLog

logger = logging.getLogger("tracker.activity")


def record_activity(
    db: AsyncSession,
    action: str,
    actor_id: Optional[str] = None,
    project_id: Optional[str] = None,
    issue_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> ActivityLog:
    """Add an entry to the caller's unit of work; the caller commits."""
    entry = ActivityLog(
        action=action,
        actor_id=actor_id,
        project_id=project_id,
        issue_id=issue_id,
        details=details or {},
    )
    db.add(entry)
    logger.debug("activity %s project=%s issue=%s", action, project_id, issue_id)
    return entry
