# routers/github.py: GitHub integration management and webhook ingestion
import os
import json
import secrets
import logging
from typing import Optional, List, Dict, Any

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auth import require_permission, CurrentUser
from database import get_db_session, get_session_factory
from github_webhooks import (
    WebhookEvent, WebhookTransitionError, build_webhook_record,
    process_webhook, reset_for_retry, verify_signature,
)
from models import (
    GitHubIntegration, GitHubWebhook, Project, GitHubEvent,
    SyncStatus, WebhookStatus, utcnow,
)

logger = logging.getLogger("tracker.github")

router = APIRouter(prefix="/api/v1/github", tags=["GitHub"])

GITHUB_API_BASE = os.getenv("GITHUB_API_BASE", "https://api.github.com")
ISSUE_TYPE_PATTERN = r"^(bug|story|task|subtask)$"
SUPPORTED_EVENTS = [e.value for e in WebhookEvent if e != WebhookEvent.UNKNOWN]


# --- Schemas ---

class StatusMappingIn(BaseModel):
    github_event: GitHubEvent
    github_status: str = Field(..., min_length=1, max_length=100)
    project_status: str = Field(..., min_length=1, max_length=50)


class BranchMappingIn(BaseModel):
    branch_pattern: str = Field(..., min_length=1, max_length=200)
    issue_type: str = Field(..., pattern=ISSUE_TYPE_PATTERN)


class WorkflowMappingIn(BaseModel):
    issue_type: str = Field(..., pattern=ISSUE_TYPE_PATTERN)
    github_status_mappings: List[StatusMappingIn] = []
    branch_mappings: List[BranchMappingIn] = []


class AutoTransitionIn(BaseModel):
    enabled: bool = True
    on_pull_request_open: bool = True
    on_pull_request_merged: bool = True
    on_issue_closed: bool = True
    on_review_approved: bool = False


def _check_events(v: Optional[List[str]]) -> Optional[List[str]]:
    if v is None:
        return v
    unknown = [e for e in v if e not in SUPPORTED_EVENTS]
    if unknown:
        raise ValueError(f"Unsupported webhook events: {', '.join(unknown)}")
    return list(dict.fromkeys(v))


class IntegrationUpsert(BaseModel):
    repository_owner: Optional[str] = None
    repository_name: Optional[str] = None
    repository_full_name: Optional[str] = None
    github_app_id: Optional[str] = None
    installation_id: Optional[str] = None
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = Field(default=None, min_length=8)
    workflow_mappings: List[WorkflowMappingIn] = []
    auto_transition: AutoTransitionIn = Field(default_factory=AutoTransitionIn)
    webhook_events: List[str] = Field(default_factory=lambda: list(SUPPORTED_EVENTS))
    is_active: bool = True

    @field_validator("webhook_events")
    @classmethod
    def validate_events(cls, v: List[str]) -> List[str]:
        return _check_events(v)


class IntegrationUpdate(BaseModel):
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = Field(default=None, min_length=8)
    workflow_mappings: Optional[List[WorkflowMappingIn]] = None
    auto_transition: Optional[AutoTransitionIn] = None
    webhook_events: Optional[List[str]] = None
    is_active: Optional[bool] = None
    sync_status: Optional[SyncStatus] = None

    @field_validator("webhook_events")
    @classmethod
    def validate_events(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return _check_events(v)

    @field_validator("webhook_secret", "workflow_mappings", "auto_transition",
                     "webhook_events", "is_active", "sync_status")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may not be null")
        return v


# --- Helpers ---

def _github_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=GITHUB_API_BASE, timeout=10)


def _webhook_url(request: Request, integration_id: str) -> str:
    return f"{str(request.base_url).rstrip('/')}/api/v1/github/webhook/{integration_id}"


def _integration_to_dict(i: GitHubIntegration) -> dict:
    """Never exposes the webhook secret or the access token"""
    return {
        "id": i.id,
        "project_id": i.project_id,
        "repository": {
            "owner": i.repository_owner,
            "name": i.repository_name,
            "full_name": i.repository_full_name,
            "url": i.repository_url,
        },
        "github_app_id": i.github_app_id,
        "installation_id": i.installation_id,
        "has_access_token": bool(i.access_token),
        "workflow_mappings": list(i.workflow_mappings or []),
        "auto_transition": dict(i.auto_transition or {}),
        "webhook_url": i.webhook_url,
        "webhook_events": list(i.webhook_events or []),
        "is_active": bool(i.is_active),
        "sync_status": i.sync_status.value if isinstance(i.sync_status, SyncStatus) else i.sync_status,
        "last_sync_at": i.last_sync_at.isoformat() if i.last_sync_at else None,
        "last_error": i.last_error,
        "created_at": i.created_at.isoformat() if i.created_at else None,
        "updated_at": i.updated_at.isoformat() if i.updated_at else None,
    }


def _webhook_to_dict(w: GitHubWebhook) -> dict:
    return {
        "id": w.id,
        "delivery_id": w.delivery_id,
        "event_type": w.event_type,
        "action": w.action,
        "event_summary": w.event_summary,
        "repository": w.repository,
        "status": w.status.value if isinstance(w.status, WebhookStatus) else w.status,
        "actions": list(w.actions or []),
        "error_message": w.error_message,
        "received_at": w.received_at.isoformat() if w.received_at else None,
        "processed_at": w.processed_at.isoformat() if w.processed_at else None,
    }


async def _get_integration_for_project(project_id: str, db: AsyncSession) -> GitHubIntegration:
    result = await db.execute(
        select(GitHubIntegration).where(GitHubIntegration.project_id == project_id)
    )
    integration = result.scalar_one_or_none()
    if not integration:
        raise HTTPException(status_code=404, detail="GitHub integration not found")
    return integration


def _mark_sync_error(integration: GitHubIntegration, message: str, event: str) -> None:
    integration.sync_status = SyncStatus.ERROR
    integration.last_error = {"message": message, "timestamp": utcnow().isoformat(), "event": event}


# ============================================================
# INTEGRATION CONFIGURATION
# ============================================================

@router.post("/integration/{project_id}")
async def upsert_integration(
    project_id: str,
    body: IntegrationUpsert,
    request: Request,
    user: CurrentUser = Depends(require_permission("github.integration")),
    db: AsyncSession = Depends(get_db_session),
):
    """Create or replace the project's integration (one per project)"""
    if not await db.get(Project, project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    if not body.repository_owner or not body.repository_name:
        raise HTTPException(status_code=400, detail="Repository owner and name are required")

    full_name = body.repository_full_name or f"{body.repository_owner}/{body.repository_name}"
    values = {
        "repository_owner": body.repository_owner,
        "repository_name": body.repository_name,
        "repository_full_name": full_name,
        "github_app_id": body.github_app_id,
        "installation_id": body.installation_id,
        "workflow_mappings": [m.model_dump(mode="json") for m in body.workflow_mappings],
        "auto_transition": body.auto_transition.model_dump(),
        "webhook_events": body.webhook_events,
        "is_active": body.is_active,
        "last_modified_by": user.id,
    }
    if body.access_token is not None:
        values["access_token"] = body.access_token

    result = await db.execute(
        select(GitHubIntegration).where(GitHubIntegration.project_id == project_id)
    )
    integration = result.scalar_one_or_none()
    created = integration is None
    if created:
        integration = GitHubIntegration(
            project_id=project_id,
            created_by=user.id,
            webhook_secret=body.webhook_secret or secrets.token_hex(32),
            **values,
        )
        db.add(integration)
        await db.flush()
    else:
        for field, value in values.items():
            setattr(integration, field, value)
        if body.webhook_secret:
            integration.webhook_secret = body.webhook_secret

    integration.webhook_url = _webhook_url(request, integration.id)
    await db.commit()
    await db.refresh(integration)
    logger.info("GitHub integration %s for project %s by %s",
                "created" if created else "updated", project_id, user.id)
    return {"created": created, "integration": _integration_to_dict(integration)}


@router.get("/integration/{project_id}")
async def get_integration(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
):
    return _integration_to_dict(await _get_integration_for_project(project_id, db))


@router.patch("/integration/{project_id}")
async def update_integration(
    project_id: str,
    body: IntegrationUpdate,
    user: CurrentUser = Depends(require_permission("github.integration")),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await _get_integration_for_project(project_id, db)
    updates = body.model_dump(exclude_unset=True, mode="json")
    for field, value in updates.items():
        if field == "sync_status":
            value = SyncStatus(value)
        setattr(integration, field, value)
    integration.last_modified_by = user.id
    await db.commit()
    await db.refresh(integration)
    return _integration_to_dict(integration)


@router.delete("/integration/{project_id}")
async def delete_integration(
    project_id: str,
    user: CurrentUser = Depends(require_permission("github.integration")),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await _get_integration_for_project(project_id, db)
    await db.delete(integration)
    await db.commit()
    logger.info("GitHub integration for project %s deleted by %s", project_id, user.id)
    return {"deleted": True, "project_id": project_id}


@router.post("/test-connection/{project_id}")
async def test_connection(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
):
    """Check the stored repository and token against the GitHub API"""
    integration = await _get_integration_for_project(project_id, db)
    headers = {"Accept": "application/vnd.github+json"}
    if integration.access_token:
        headers["Authorization"] = f"Bearer {integration.access_token}"

    try:
        async with _github_client() as client:
            resp = await client.get(f"/repos/{integration.repository_full_name}", headers=headers)
    except httpx.HTTPError as e:
        _mark_sync_error(integration, f"Connection failed: {str(e)[:200]}", "test_connection")
        await db.commit()
        raise HTTPException(status_code=502, detail="Could not reach GitHub")

    if resp.status_code != 200:
        _mark_sync_error(integration, f"GitHub API returned {resp.status_code}", "test_connection")
        await db.commit()
        raise HTTPException(status_code=400, detail=f"GitHub API returned {resp.status_code}")

    repo = resp.json()
    integration.sync_status = SyncStatus.ACTIVE
    integration.last_sync_at = utcnow()
    integration.last_error = None
    await db.commit()
    return {
        "success": True,
        "repository": {
            "full_name": repo.get("full_name"),
            "private": repo.get("private"),
            "default_branch": repo.get("default_branch"),
        },
    }


# ============================================================
# WEBHOOK DELIVERIES
# ============================================================

@router.get("/webhooks/{project_id}")
async def list_webhooks(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[WebhookStatus] = None,
    limit: int = Query(default=50, ge=1, le=200),
):
    stmt = select(GitHubWebhook).where(GitHubWebhook.project_id == project_id)
    if status:
        stmt = stmt.where(GitHubWebhook.status == status)
    result = await db.execute(stmt.order_by(GitHubWebhook.received_at.desc()).limit(limit))
    return [_webhook_to_dict(w) for w in result.scalars().all()]


@router.post("/webhooks/{webhook_id}/retry")
async def retry_webhook(
    webhook_id: str,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_permission("github.webhooks")),
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Reset a failed delivery to received and process it again"""
    webhook = await db.get(GitHubWebhook, webhook_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    try:
        reset_for_retry(webhook)
    except WebhookTransitionError as e:
        raise HTTPException(status_code=400, detail=f"Only failed webhooks can be retried: {e}")

    await db.commit()
    logger.info("Webhook %s queued for retry by %s", webhook_id, user.id)
    background_tasks.add_task(process_webhook, webhook.id, session_factory)
    return {"message": "Webhook queued for retry", "webhook_id": webhook.id, "status": WebhookStatus.RECEIVED.value}


@router.get("/stats/{project_id}")
async def webhook_stats(
    project_id: str,
    user: CurrentUser = Depends(require_permission("projects.read")),
    db: AsyncSession = Depends(get_db_session),
):
    integration = await _get_integration_for_project(project_id, db)

    count_stmt = (
        select(GitHubWebhook.status, func.count(GitHubWebhook.id))
        .where(GitHubWebhook.project_id == project_id)
        .group_by(GitHubWebhook.status)
    )
    by_status: Dict[str, int] = {}
    for status, count in (await db.execute(count_stmt)).all():
        by_status[status.value if isinstance(status, WebhookStatus) else status] = count
    total = sum(by_status.values())
    processed = by_status.get(WebhookStatus.PROCESSED.value, 0)

    recent = await db.execute(
        select(GitHubWebhook)
        .where(GitHubWebhook.project_id == project_id)
        .order_by(GitHubWebhook.received_at.desc())
        .limit(10)
    )
    return {
        "integration": {
            "is_active": bool(integration.is_active),
            "sync_status": integration.sync_status.value if isinstance(integration.sync_status, SyncStatus) else integration.sync_status,
            "last_sync_at": integration.last_sync_at.isoformat() if integration.last_sync_at else None,
            "last_error": integration.last_error,
        },
        "total_events": total,
        "processed_events": processed,
        "failed_events": by_status.get(WebhookStatus.FAILED.value, 0),
        "ignored_events": by_status.get(WebhookStatus.IGNORED.value, 0),
        "success_rate": round(processed / total * 100, 2) if total else 0,
        "by_status": by_status,
        "recent_events": [_webhook_to_dict(w) for w in recent.scalars().all()],
    }


@router.post("/webhook/{integration_id}")
async def receive_webhook(
    integration_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db_session),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Public endpoint for GitHub; authenticated by the HMAC signature only"""
    integration = await db.get(GitHubIntegration, integration_id)
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")

    if not integration.is_active:
        return {"message": "Integration is inactive"}

    body = await request.body()
    if not verify_signature(integration.webhook_secret, body, request.headers.get("X-Hub-Signature-256")):
        logger.warning("Invalid webhook signature for integration %s", integration_id)
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_type = request.headers.get("X-GitHub-Event")
    if not event_type:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Event header")
    if event_type == "ping":
        return {"message": "pong"}

    delivery_id = request.headers.get("X-GitHub-Delivery")
    if not delivery_id:
        raise HTTPException(status_code=400, detail="Missing X-GitHub-Delivery header")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    existing = await db.execute(
        select(GitHubWebhook.id).where(GitHubWebhook.delivery_id == delivery_id)
    )
    if existing.scalar_one_or_none():
        logger.info("Duplicate delivery %s ignored", delivery_id)
        raise HTTPException(status_code=409, detail="Delivery already received")

    headers = {k: v for k, v in request.headers.items() if k.lower() != "authorization"}
    webhook = build_webhook_record(integration, delivery_id, event_type, payload, headers)
    db.add(webhook)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Duplicate delivery %s ignored", delivery_id)
        raise HTTPException(status_code=409, detail="Delivery already received")

    logger.info("Webhook %s received (%s:%s) for integration %s",
                webhook.id, event_type, webhook.action, integration_id)
    background_tasks.add_task(process_webhook, webhook.id, session_factory)
    return {"message": "Webhook received successfully", "webhook_id": webhook.id}
