# github_webhooks.py: GitHub webhook verification, projection and processing
#
# Delivery lifecycle:
#   received -> processing -> processed | ignored | failed
#   failed -> received (operator retry only)
#
# Processing runs out of band (FastAPI BackgroundTasks) with its own session
# and never raises: failures are recorded on the delivery and on the
# integration's error snapshot.

import re
import hmac
import hashlib
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from activity import record_activity
from models import (
    GitHubIntegration, GitHubWebhook, Issue, GitHubEvent,
    WebhookStatus, WebhookActionType, SyncStatus, utcnow,
)

logger = logging.getLogger("tracker.webhooks")

ISSUE_KEY_RE = re.compile(r"([A-Z]+-\d+)")
CLOSING_REF_RE = re.compile(
    r"(?:close|closes|closed|fix|fixes|fixed|resolve|resolves|resolved)\s+#?(\d+)",
    re.IGNORECASE,
)
SIGNATURE_PREFIX = "sha256="
WILDCARD_STATUS = "any"


# ============================================================
# SIGNATURES
# ============================================================

def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of an ``X-Hub-Signature-256`` header over the raw body"""
    if not secret or not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


# ============================================================
# STATE MACHINE
# ============================================================

class WebhookTransitionError(Exception):
    """Raised when a delivery is moved to a status its current status does not allow"""

    def __init__(self, current: WebhookStatus, requested: WebhookStatus):
        self.current = current
        self.requested = requested
        allowed = ", ".join(s.value for s in TRANSITIONS.get(current, ())) or "none"
        super().__init__(
            f"Cannot move webhook from '{current.value}' to '{requested.value}' "
            f"(allowed: {allowed})"
        )


TRANSITIONS: Dict[WebhookStatus, frozenset] = {
    WebhookStatus.RECEIVED: frozenset({WebhookStatus.PROCESSING}),
    WebhookStatus.PROCESSING: frozenset({
        WebhookStatus.PROCESSED,
        WebhookStatus.IGNORED,
        WebhookStatus.FAILED,
    }),
    WebhookStatus.FAILED: frozenset({WebhookStatus.RECEIVED}),
    WebhookStatus.PROCESSED: frozenset(),
    WebhookStatus.IGNORED: frozenset(),
}


def is_transition_valid(current: WebhookStatus, requested: WebhookStatus) -> bool:
    return WebhookStatus(requested) in TRANSITIONS.get(WebhookStatus(current), frozenset())


def transition(webhook: GitHubWebhook, requested: WebhookStatus) -> None:
    current = WebhookStatus(webhook.status)
    if not is_transition_valid(current, requested):
        raise WebhookTransitionError(current, requested)
    logger.debug("webhook %s: %s -> %s", webhook.id, current.value, requested.value)
    webhook.status = requested


def reset_for_retry(webhook: GitHubWebhook) -> None:
    """failed -> received, clearing the previous outcome"""
    transition(webhook, WebhookStatus.RECEIVED)
    webhook.error_message = None
    webhook.processed_at = None
    webhook.actions = []


# ============================================================
# EVENT CLASSIFICATION & PROJECTION
# ============================================================

class WebhookEvent(str, Enum):
    """``X-GitHub-Event`` values the processor understands"""
    PULL_REQUEST = "pull_request"
    ISSUES = "issues"
    REVIEW = "pull_request_review"
    PUSH = "push"
    CHECK_RUN = "check_run"
    UNKNOWN = "unknown"


def classify_event(event_type: Optional[str]) -> WebhookEvent:
    try:
        return WebhookEvent(event_type)
    except ValueError:
        return WebhookEvent.UNKNOWN


def _login(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    return (obj or {}).get("login")


def project_repository(payload: Dict[str, Any]) -> Dict[str, Any]:
    repo = payload.get("repository") or {}
    return {
        "id": repo.get("id"),
        "name": repo.get("name"),
        "full_name": repo.get("full_name"),
        "owner": _login(repo.get("owner")),
    }


def project_payload(event: WebhookEvent, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Type-specific fields kept on the delivery record; empty for unknown events"""
    if event == WebhookEvent.PULL_REQUEST:
        pr = payload.get("pull_request") or {}
        return {"pull_request": {
            "id": pr.get("id"),
            "number": pr.get("number"),
            "title": pr.get("title"),
            "body": pr.get("body"),
            "state": pr.get("state"),
            "merged": pr.get("merged"),
            "mergeable": pr.get("mergeable"),
            "head": {"ref": (pr.get("head") or {}).get("ref"), "sha": (pr.get("head") or {}).get("sha")},
            "base": {"ref": (pr.get("base") or {}).get("ref"), "sha": (pr.get("base") or {}).get("sha")},
        }}

    if event == WebhookEvent.ISSUES:
        issue = payload.get("issue") or {}
        return {"issue": {
            "id": issue.get("id"),
            "number": issue.get("number"),
            "title": issue.get("title"),
            "body": issue.get("body"),
            "state": issue.get("state"),
            "labels": [l.get("name") for l in issue.get("labels") or []],
            "assignees": [_login(a) for a in issue.get("assignees") or []],
        }}

    if event == WebhookEvent.REVIEW:
        review = payload.get("review") or {}
        pr = payload.get("pull_request") or {}
        return {
            "review": {
                "id": review.get("id"),
                "state": review.get("state"),
                "body": review.get("body"),
                "user": _login(review.get("user")),
            },
            "pull_request": {
                "id": pr.get("id"),
                "number": pr.get("number"),
                "title": pr.get("title"),
                "state": pr.get("state"),
                "head": {"ref": (pr.get("head") or {}).get("ref")},
            },
        }

    if event == WebhookEvent.PUSH:
        return {"commits": [
            {
                "id": c.get("id"),
                "message": c.get("message") or "",
                "author": {
                    "name": (c.get("author") or {}).get("name"),
                    "email": (c.get("author") or {}).get("email"),
                },
                "url": c.get("url"),
            }
            for c in payload.get("commits") or []
        ]}

    if event == WebhookEvent.CHECK_RUN:
        run = payload.get("check_run") or {}
        return {"check_run": {
            "id": run.get("id"),
            "name": run.get("name"),
            "status": run.get("status"),
            "conclusion": run.get("conclusion"),
            "url": run.get("html_url"),
        }}

    return {}


def build_webhook_record(
    integration: GitHubIntegration,
    delivery_id: str,
    event_type: str,
    payload: Dict[str, Any],
    headers: Dict[str, str],
) -> GitHubWebhook:
    webhook = GitHubWebhook(
        delivery_id=delivery_id,
        event_type=event_type,
        action=payload.get("action") or "unknown",
        repository=project_repository(payload),
        project_id=integration.project_id,
        integration_id=integration.id,
        raw_payload=payload,
        headers=headers,
        status=WebhookStatus.RECEIVED,
        actions=[],
    )
    for field, value in project_payload(classify_event(event_type), payload).items():
        setattr(webhook, field, value)
    return webhook


# ============================================================
# MAPPING & ISSUE LOOKUP
# ============================================================

def find_workflow_mapping(
    workflow_mappings: Optional[List[Dict[str, Any]]],
    event: GitHubEvent,
    action: str,
) -> Optional[Dict[str, Any]]:
    """First status mapping for (event, action or 'any'), in stored order"""
    for mapping in workflow_mappings or []:
        for entry in mapping.get("github_status_mappings") or []:
            if entry.get("github_event") != event.value:
                continue
            if entry.get("github_status") in (action, WILDCARD_STATUS):
                return entry
    return None


def extract_issue_numbers(message: Optional[str]) -> List[str]:
    return CLOSING_REF_RE.findall(message or "")


def extract_issue_key(text: Optional[str]) -> Optional[str]:
    match = ISSUE_KEY_RE.search(text or "")
    return match.group(1) if match else None


async def _issue_by_key(db: AsyncSession, project_id: str, key: str) -> Optional[Issue]:
    result = await db.execute(
        select(Issue).where(Issue.project_id == project_id, Issue.key == key)
    )
    return result.scalar_one_or_none()


async def _issue_by_github_number(db: AsyncSession, project_id: str, number: Any) -> Optional[Issue]:
    result = await db.execute(
        select(Issue)
        .where(Issue.project_id == project_id, Issue.github_issue_number == number)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_related_issue(db: AsyncSession, pull_request: Dict[str, Any], project_id: str) -> Optional[Issue]:
    """Title key, then head-branch key, then the stored GitHub number"""
    for text in (pull_request.get("title"), (pull_request.get("head") or {}).get("ref")):
        key = extract_issue_key(text)
        if key:
            issue = await _issue_by_key(db, project_id, key)
            if issue:
                return issue

    if pull_request.get("number"):
        return await _issue_by_github_number(db, project_id, pull_request["number"])
    return None


async def find_issue_by_number_suffix(db: AsyncSession, project_id: str, number: str) -> Optional[Issue]:
    result = await db.execute(
        select(Issue)
        .where(Issue.project_id == project_id, Issue.key.like(f"%-{number}"))
        .order_by(Issue.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


def _action(action_type: WebhookActionType, description: str, issue: Optional[Issue] = None,
            from_status: Optional[str] = None, to_status: Optional[str] = None) -> Dict[str, Any]:
    return {
        "type": action_type.value,
        "description": description,
        "issue_id": issue.id if issue else None,
        "from_status": from_status,
        "to_status": to_status,
        "timestamp": utcnow().isoformat(),
    }


async def apply_transition(
    db: AsyncSession,
    issue: Issue,
    mapping: Optional[Dict[str, Any]],
    reason: str,
) -> Optional[Dict[str, Any]]:
    """Move the issue to the mapping's target status.

    Conditional on the status still being the one that was read, so two
    deliveries racing on the same issue cannot both apply.
    """
    if not mapping:
        return None
    target = mapping.get("project_status")
    old_status = issue.status
    if not target or target == old_status:
        return None

    result = await db.execute(
        update(Issue)
        .where(Issue.id == issue.id, Issue.status == old_status)
        .values(status=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("Issue %s changed concurrently; skipping transition to %s", issue.key, target)
        return None

    issue.status = target
    record_activity(
        db, "issue_transitioned",
        project_id=issue.project_id, issue_id=issue.id,
        details={"from": old_status, "to": target, "source": "github"},
    )
    return _action(
        WebhookActionType.ISSUE_TRANSITION,
        f"Transitioned issue {issue.key} from {old_status} to {target} due to {reason}",
        issue, old_status, target,
    )


# ============================================================
# HANDLERS
# ============================================================

Handler = Callable[[AsyncSession, GitHubWebhook, GitHubIntegration], Awaitable[List[Dict[str, Any]]]]


async def _handle_pull_request(db, webhook, integration):
    pr = webhook.pull_request
    if not pr:
        return []
    issue = await find_related_issue(db, pr, integration.project_id)
    if not issue:
        return []
    mapping = find_workflow_mapping(integration.workflow_mappings, GitHubEvent.PULL_REQUEST, webhook.action)
    action = await apply_transition(db, issue, mapping, f"PR {webhook.action}")
    return [action] if action else []


async def _handle_issue(db, webhook, integration):
    gh_issue = webhook.issue
    if not gh_issue or gh_issue.get("number") is None:
        return []
    issue = await _issue_by_github_number(db, integration.project_id, gh_issue["number"])
    if not issue:
        return []
    mapping = find_workflow_mapping(integration.workflow_mappings, GitHubEvent.ISSUE, webhook.action)
    action = await apply_transition(db, issue, mapping, f"GitHub issue {webhook.action}")
    return [action] if action else []


async def _handle_review(db, webhook, integration):
    review, pr = webhook.review, webhook.pull_request
    if not review or not pr:
        return []
    issue = await find_related_issue(db, pr, integration.project_id)
    if not issue:
        return []
    # Matched on the delivery action; the review state only appears in the description
    mapping = find_workflow_mapping(integration.workflow_mappings, GitHubEvent.REVIEW, webhook.action)
    action = await apply_transition(db, issue, mapping, f"review {review.get('state')}")
    return [action] if action else []


async def _handle_push(db, webhook, integration):
    actions = []
    mapping = find_workflow_mapping(integration.workflow_mappings, GitHubEvent.COMMIT, "pushed")
    for commit in webhook.commits or []:
        for number in extract_issue_numbers(commit.get("message")):
            issue = await find_issue_by_number_suffix(db, integration.project_id, number)
            if not issue:
                continue
            action = await apply_transition(db, issue, mapping, "commit")
            if action:
                actions.append(action)
    return actions


async def _handle_check_run(db, webhook, integration):
    run = webhook.check_run
    if not run:
        return []
    return [_action(
        WebhookActionType.NO_ACTION,
        f"Check run {run.get('conclusion')} for {run.get('name')}",
    )]


HANDLERS: Dict[WebhookEvent, Handler] = {
    WebhookEvent.PULL_REQUEST: _handle_pull_request,
    WebhookEvent.ISSUES: _handle_issue,
    WebhookEvent.REVIEW: _handle_review,
    WebhookEvent.PUSH: _handle_push,
    WebhookEvent.CHECK_RUN: _handle_check_run,
}


# ============================================================
# PROCESSOR
# ============================================================

async def _dispatch(db: AsyncSession, webhook: GitHubWebhook, integration: GitHubIntegration) -> List[Dict[str, Any]]:
    handler = HANDLERS.get(classify_event(webhook.event_type))
    if handler is None:
        logger.info("No handler for event %r (webhook %s)", webhook.event_type, webhook.id)
        return []
    return await handler(db, webhook, integration)


async def process_webhook(webhook_id: str, session_factory: async_sessionmaker) -> Optional[WebhookStatus]:
    """Run one delivery through the state machine. Returns the final status."""
    try:
        async with session_factory() as db:
            webhook = await db.get(GitHubWebhook, webhook_id)
            if webhook is None:
                raise LookupError(f"Webhook {webhook_id} not found")
            if WebhookStatus(webhook.status) != WebhookStatus.RECEIVED:
                logger.info("Webhook %s is %s; nothing to process", webhook_id, webhook.status)
                return WebhookStatus(webhook.status)

            transition(webhook, WebhookStatus.PROCESSING)
            await db.commit()

            integration = await db.get(GitHubIntegration, webhook.integration_id)
            if integration is None:
                raise LookupError(f"Integration {webhook.integration_id} not found")

            actions = await _dispatch(db, webhook, integration)

            webhook.actions = actions
            transition(webhook, WebhookStatus.PROCESSED if actions else WebhookStatus.IGNORED)
            webhook.processed_at = utcnow()
            integration.last_sync_at = utcnow()
            integration.sync_status = SyncStatus.ACTIVE
            await db.commit()

            logger.info(
                "Webhook %s (%s:%s) %s with %d action(s)",
                webhook_id, webhook.event_type, webhook.action,
                WebhookStatus(webhook.status).value, len(actions),
            )
            return WebhookStatus(webhook.status)
    except Exception as exc:
        logger.exception("Error processing webhook %s", webhook_id)
        await _record_failure(webhook_id, exc, session_factory)
        return WebhookStatus.FAILED


async def _record_failure(webhook_id: str, exc: Exception, session_factory: async_sessionmaker) -> None:
    """Terminal failure handler; logs and swallows its own errors"""
    try:
        async with session_factory() as db:
            webhook = await db.get(GitHubWebhook, webhook_id)
            if webhook is None:
                return
            if is_transition_valid(webhook.status, WebhookStatus.FAILED):
                transition(webhook, WebhookStatus.FAILED)
                webhook.error_message = str(exc) or exc.__class__.__name__
            else:
                logger.warning("Webhook %s left in %s after failure", webhook_id, webhook.status)

            integration = await db.get(GitHubIntegration, webhook.integration_id) if webhook.integration_id else None
            if integration is not None:
                integration.sync_status = SyncStatus.ERROR
                integration.last_error = {
                    "message": str(exc) or exc.__class__.__name__,
                    "timestamp": utcnow().isoformat(),
                    "event": webhook.event_type,
                }
            await db.commit()
    except Exception:
        logger.exception("Could not record failure for webhook %s", webhook_id)
