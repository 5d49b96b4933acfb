# routers/system_config.py: global configuration singleton
import logging
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_permission, CurrentUser
from database import get_db_session
from models import SystemConfig, utcnow

logger = logging.getLogger("tracker.system_config")

router = APIRouter(prefix="/api/v1/system-config", tags=["System Configuration"])

SINGLETON_KEY = "default"


def _status(value: str, label: str, color: str, order: int) -> dict:
    return {"value": value, "label": label, "color": color, "order": order, "is_active": True}


def _chain(values: List[str]) -> List[dict]:
    return [{"from": a, "to": b, "is_active": True} for a, b in zip(values, values[1:])]


_STANDARD_STATUSES = [
    _status("backlog", "Backlog", "#ECEFF1", 1),
    _status("analysis_ready", "Analysis Ready", "#E3F2FD", 2),
    _status("analysis", "Analysis", "#E8F5E9", 3),
    _status("development", "Development", "#FFF3E0", 4),
    _status("acceptance", "Acceptance", "#F3E5F5", 5),
    _status("released", "Released", "#E0F7FA", 6),
]

_SUBTASK_STATUSES = [
    _status("backlog", "Backlog", "#ECEFF1", 1),
    _status("development", "Development", "#FFF3E0", 2),
    _status("code_review", "Code Review", "#E8F5E9", 3),
    _status("qa", "QA", "#E3F2FD", 4),
    _status("deployment", "Deployment", "#F3E5F5", 5),
    _status("released", "Released", "#E0F7FA", 6),
]

DEFAULT_CONFIG: Dict[str, Any] = {
    "field_types": [
        {"value": v, "label": label, "description": desc, "input_type": v, "validation": {}, "is_active": True}
        for v, label, desc in [
            ("text", "Text", "Single line text input"),
            ("textarea", "Text Area", "Multi-line text input"),
            ("number", "Number", "Numeric input"),
            ("date", "Date", "Date picker"),
            ("datetime", "Date & Time", "Date and time picker"),
            ("select", "Select", "Single choice dropdown"),
            ("multiselect", "Multi Select", "Multiple choice dropdown"),
            ("checkbox", "Checkbox", "Boolean checkbox"),
            ("radio", "Radio", "Single choice radio buttons"),
        ]
    ],
    "cost_categories": [
        {"value": v, "label": label, "description": desc, "color": color, "is_active": True}
        for v, label, desc, color in [
            ("aws", "AWS Services", "Amazon Web Services costs", "#FF9900"),
            ("lucid", "Lucidchart", "Lucidchart subscription and usage", "#1976d2"),
            ("tools", "Development Tools", "Software development tools", "#4caf50"),
            ("infrastructure", "Infrastructure", "Server and hosting costs", "#ff9800"),
            ("software", "Software Licenses", "Software licensing costs", "#9c27b0"),
            ("consulting", "Consulting", "External consulting services", "#f44336"),
            ("training", "Training", "Training and education costs", "#00bcd4"),
            ("other", "Other", "Other miscellaneous costs", "#607d8b"),
        ]
    ],
    "validation_rules": {
        "password": {
            "min_length": 6,
            "require_uppercase": False,
            "require_lowercase": False,
            "require_numbers": False,
            "require_special_chars": False,
        },
        "project": {"key_pattern": "^[A-Z]+$", "key_min_length": 2, "key_max_length": 10},
    },
    "ui_settings": {
        "default_theme": "light",
        "default_language": "en",
        "items_per_page": 20,
        "max_items_per_page": 100,
        "enable_notifications": True,
        "enable_email_notifications": False,
    },
    "workflow_templates": [
        {
            "name": "Standard Workflow",
            "description": "Standard workflow for bugs, stories, and tasks",
            "issue_types": ["bug", "story", "task"],
            "statuses": _STANDARD_STATUSES,
            "transitions": _chain([s["value"] for s in _STANDARD_STATUSES]),
            "is_default": True,
            "is_active": True,
        },
        {
            "name": "Subtask Workflow",
            "description": "Simplified workflow for subtasks",
            "issue_types": ["subtask"],
            "statuses": _SUBTASK_STATUSES,
            "transitions": _chain([s["value"] for s in _SUBTASK_STATUSES]),
            "is_default": True,
            "is_active": True,
        },
    ],
}


# --- Schemas ---

class SystemConfigUpdate(BaseModel):
    field_types: Optional[List[Dict[str, Any]]] = None
    cost_categories: Optional[List[Dict[str, Any]]] = None
    validation_rules: Optional[Dict[str, Any]] = None
    ui_settings: Optional[Dict[str, Any]] = None
    workflow_templates: Optional[List[Dict[str, Any]]] = None


# --- Helpers ---

def _config_to_dict(c: SystemConfig) -> dict:
    return {
        "id": c.id,
        "field_types": c.field_types,
        "cost_categories": c.cost_categories,
        "validation_rules": c.validation_rules,
        "ui_settings": c.ui_settings,
        "workflow_templates": c.workflow_templates,
        "version": c.version,
        "last_updated": c.last_updated.isoformat() if c.last_updated else None,
        "updated_by": c.updated_by,
    }


async def _find_config(db: AsyncSession) -> Optional[SystemConfig]:
    result = await db.execute(select(SystemConfig).where(SystemConfig.singleton_key == SINGLETON_KEY))
    return result.scalar_one_or_none()


async def get_or_create_config(db: AsyncSession) -> SystemConfig:
    """Single configuration row; a losing concurrent insert re-reads the winner"""
    config = await _find_config(db)
    if config:
        return config

    db.add(SystemConfig(singleton_key=SINGLETON_KEY, **DEFAULT_CONFIG))
    try:
        await db.commit()
        logger.info("Created default system configuration")
    except IntegrityError:
        await db.rollback()
        logger.info("System configuration created concurrently; re-reading")
    return await _find_config(db)


# --- Endpoints ---

@router.get("")
async def get_system_config(
    user: CurrentUser = Depends(require_permission("system_config.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return {"config": _config_to_dict(await get_or_create_config(db))}


@router.put("")
async def update_system_config(
    body: SystemConfigUpdate,
    user: CurrentUser = Depends(require_permission("system_config.update")),
    db: AsyncSession = Depends(get_db_session),
):
    config = await get_or_create_config(db)
    updates = body.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in updates.items():
        setattr(config, field, value)
    config.last_updated = utcnow()
    config.updated_by = user.id
    await db.commit()
    await db.refresh(config)
    logger.info("System configuration updated by %s: %s", user.id, sorted(updates))
    return {"config": _config_to_dict(config)}
