# tests/test_github_webhooks.py: webhook verification, ingestion and processing
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select, func

from github_webhooks import (
    TRANSITIONS, WebhookEvent, WebhookTransitionError, apply_transition,
    build_webhook_record, classify_event, compute_signature, extract_issue_numbers,
    find_workflow_mapping, is_transition_valid, process_webhook, reset_for_retry,
    verify_signature,
)
from models import GitHubEvent, GitHubIntegration, GitHubWebhook, Issue, SyncStatus, WebhookStatus
from tests.conftest import WEBHOOK_SECRET, WORKFLOW_MAPPINGS, make_issue, signed_webhook

REPO = {"id": 1, "name": "widgets", "full_name": "acme/widgets", "owner": {"login": "acme"}}


def pr_payload(title: str, action: str = "opened", head_ref: str = "main", number: int = 7) -> dict:
    return {
        "action": action,
        "repository": REPO,
        "pull_request": {
            "id": 99, "number": number, "title": title, "state": "open",
            "head": {"ref": head_ref, "sha": "abc"}, "base": {"ref": "main", "sha": "def"},
        },
    }


def push_payload(*messages: str) -> dict:
    return {
        "repository": REPO,
        "commits": [
            {"id": f"c{i}", "message": m, "author": {"name": "Dev", "email": "dev@acme.io"}, "url": "u"}
            for i, m in enumerate(messages)
        ],
    }


async def _count_webhooks(session_factory) -> int:
    async with session_factory() as s:
        return (await s.execute(select(func.count(GitHubWebhook.id)))).scalar()


async def _load(session_factory, model, obj_id):
    async with session_factory() as s:
        return await s.get(model, obj_id)


async def _deliver(client, session_factory, integration, payload, event, delivery_id=None):
    """POST a signed delivery and make sure processing has settled"""
    body, headers = signed_webhook(payload, event, delivery_id=delivery_id)
    res = await client.post(f"/api/v1/github/webhook/{integration.id}", content=body, headers=headers)
    assert res.status_code == 200, res.text
    webhook_id = res.json()["webhook_id"]
    await process_webhook(webhook_id, session_factory)
    return await _load(session_factory, GitHubWebhook, webhook_id)


class TestSignatures:
    def test_valid_signature(self):
        body = b'{"action":"opened"}'
        assert verify_signature("s3cret", body, compute_signature("s3cret", body))

    def test_format(self):
        sig = compute_signature("s3cret", b"{}")
        assert sig.startswith("sha256=")
        assert len(sig) == len("sha256=") + 64

    def test_single_byte_mutation_fails(self):
        body = b'{"action":"opened"}'
        sig = compute_signature("s3cret", body)
        assert not verify_signature("s3cret", b'{"action":"opene"}', sig)
        assert not verify_signature("s3cret", body.replace(b"o", b"O", 1), sig)

    def test_wrong_secret_fails(self):
        body = b"{}"
        assert not verify_signature("other", body, compute_signature("s3cret", body))

    @pytest.mark.parametrize("signature", [None, "", "sha1=abc", "deadbeef"])
    def test_missing_or_malformed_header(self, signature):
        assert not verify_signature("s3cret", b"{}", signature)

    def test_missing_secret(self):
        assert not verify_signature(None, b"{}", compute_signature("x", b"{}"))


class TestStateMachine:
    @pytest.mark.parametrize("current,requested", [
        (WebhookStatus.RECEIVED, WebhookStatus.PROCESSING),
        (WebhookStatus.PROCESSING, WebhookStatus.PROCESSED),
        (WebhookStatus.PROCESSING, WebhookStatus.IGNORED),
        (WebhookStatus.PROCESSING, WebhookStatus.FAILED),
        (WebhookStatus.FAILED, WebhookStatus.RECEIVED),
    ])
    def test_allowed(self, current, requested):
        assert is_transition_valid(current, requested)

    @pytest.mark.parametrize("current,requested", [
        (WebhookStatus.PROCESSED, WebhookStatus.PROCESSING),
        (WebhookStatus.PROCESSED, WebhookStatus.RECEIVED),
        (WebhookStatus.IGNORED, WebhookStatus.RECEIVED),
        (WebhookStatus.RECEIVED, WebhookStatus.PROCESSED),
        (WebhookStatus.FAILED, WebhookStatus.PROCESSING),
        (WebhookStatus.PROCESSING, WebhookStatus.RECEIVED),
    ])
    def test_rejected(self, current, requested):
        assert not is_transition_valid(current, requested)

    def test_terminal_states(self):
        assert TRANSITIONS[WebhookStatus.PROCESSED] == frozenset()
        assert TRANSITIONS[WebhookStatus.IGNORED] == frozenset()

    def test_retry_only_from_failed(self):
        webhook = GitHubWebhook(status=WebhookStatus.PROCESSED)
        with pytest.raises(WebhookTransitionError):
            reset_for_retry(webhook)
        assert webhook.status == WebhookStatus.PROCESSED

        webhook = GitHubWebhook(status=WebhookStatus.FAILED, error_message="boom", actions=[])
        reset_for_retry(webhook)
        assert webhook.status == WebhookStatus.RECEIVED
        assert webhook.error_message is None


class TestMappingAndParsing:
    def test_first_match_wins(self):
        mappings = [
            {"github_status_mappings": [
                {"github_event": "pull_request", "github_status": "any", "project_status": "first"},
            ]},
            {"github_status_mappings": [
                {"github_event": "pull_request", "github_status": "opened", "project_status": "second"},
            ]},
        ]
        found = find_workflow_mapping(mappings, GitHubEvent.PULL_REQUEST, "opened")
        assert found["project_status"] == "first"

    def test_event_must_match(self):
        assert find_workflow_mapping(WORKFLOW_MAPPINGS, GitHubEvent.CHECK_RUN, "completed") is None
        assert find_workflow_mapping(WORKFLOW_MAPPINGS, GitHubEvent.PULL_REQUEST, "reopened") is None

    def test_empty_config(self):
        assert find_workflow_mapping(None, GitHubEvent.COMMIT, "pushed") is None
        assert find_workflow_mapping([{"issue_type": "bug"}], GitHubEvent.COMMIT, "pushed") is None

    def test_closing_references(self):
        assert extract_issue_numbers("fixes #42") == ["42"]
        assert extract_issue_numbers("Closes 7, resolved #8 and FIXED #9") == ["7", "8", "9"]
        assert extract_issue_numbers("refs #42") == []
        assert extract_issue_numbers(None) == []

    def test_classify_event(self):
        assert classify_event("pull_request_review") == WebhookEvent.REVIEW
        assert classify_event("deployment") == WebhookEvent.UNKNOWN
        assert classify_event(None) == WebhookEvent.UNKNOWN


@pytest.mark.asyncio
class TestIngestion:
    async def test_unknown_integration(self, client: AsyncClient):
        body, headers = signed_webhook({"action": "opened"}, "pull_request")
        res = await client.post("/api/v1/github/webhook/missing", content=body, headers=headers)
        assert res.status_code == 404

    async def test_inactive_integration_is_silent_sink(self, client: AsyncClient, db_session, session_factory, test_integration):
        test_integration.is_active = False
        await db_session.commit()
        # Signature is not even checked
        body, headers = signed_webhook(pr_payload("Fix ABC-42"), "pull_request", secret="wrong")
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert res.status_code == 200
        assert await _count_webhooks(session_factory) == 0

    async def test_bad_signature_persists_nothing(self, client: AsyncClient, session_factory, test_integration):
        body, headers = signed_webhook(pr_payload("Fix ABC-42"), "pull_request", secret="wrong")
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert res.status_code == 401
        assert await _count_webhooks(session_factory) == 0

    async def test_tampered_body_rejected(self, client: AsyncClient, session_factory, test_integration):
        body, headers = signed_webhook(pr_payload("Fix ABC-42"), "pull_request")
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}",
                                content=body.replace(b"ABC-42", b"ABC-43"), headers=headers)
        assert res.status_code == 401
        assert await _count_webhooks(session_factory) == 0

    async def test_ping_acknowledged_not_persisted(self, client: AsyncClient, session_factory, test_integration):
        body, headers = signed_webhook({"zen": "Keep it simple."}, "ping")
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert res.status_code == 200
        assert await _count_webhooks(session_factory) == 0

    async def test_duplicate_delivery_is_conflict(self, client: AsyncClient, session_factory, test_integration):
        delivery = str(uuid.uuid4())
        body, headers = signed_webhook(pr_payload("No key here"), "pull_request", delivery_id=delivery)
        first = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        second = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert first.status_code == 200
        assert second.status_code == 409
        assert await _count_webhooks(session_factory) == 1

    async def test_missing_delivery_header(self, client: AsyncClient, session_factory, test_integration):
        body, headers = signed_webhook(pr_payload("x"), "pull_request")
        del headers["X-GitHub-Delivery"]
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert res.status_code == 400
        assert await _count_webhooks(session_factory) == 0

    async def test_projection_for_pull_request(self, client: AsyncClient, session_factory, test_integration):
        webhook = await _deliver(client, session_factory, test_integration,
                                 pr_payload("Unrelated", head_ref="feature/x"), "pull_request")
        assert webhook.action == "opened"
        assert webhook.repository == {"id": 1, "name": "widgets", "full_name": "acme/widgets", "owner": "acme"}
        assert webhook.pull_request["head"]["ref"] == "feature/x"
        assert webhook.issue is None
        assert webhook.commits is None
        assert webhook.event_summary == "pull_request:opened - acme/widgets"
        assert "X-Hub-Signature-256".lower() in {k.lower() for k in webhook.headers}

    async def test_unknown_event_persisted_without_projection(self, client: AsyncClient, session_factory, test_integration):
        webhook = await _deliver(client, session_factory, test_integration,
                                 {"action": "created", "repository": REPO}, "deployment")
        assert webhook.event_type == "deployment"
        for field in ("pull_request", "issue", "review", "commits", "check_run"):
            assert getattr(webhook, field) is None
        assert webhook.status == WebhookStatus.IGNORED


@pytest.mark.asyncio
class TestProcessing:
    async def test_pull_request_transitions_issue(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-42")
        webhook = await _deliver(client, session_factory, test_integration,
                                 pr_payload("Fix ABC-42 login bug"), "pull_request")

        assert webhook.status == WebhookStatus.PROCESSED
        assert webhook.processed_at is not None
        assert len(webhook.actions) == 1
        action = webhook.actions[0]
        assert action["type"] == "issue_transition"
        assert action["from_status"] == "backlog"
        assert action["to_status"] == "development"
        assert action["issue_id"] == issue.id
        assert action["description"] == "Transitioned issue ABC-42 from backlog to development due to PR opened"

        assert (await _load(session_factory, Issue, issue.id)).status == "development"
        integration = await _load(session_factory, GitHubIntegration, test_integration.id)
        assert integration.sync_status == SyncStatus.ACTIVE
        assert integration.last_sync_at is not None

    async def test_pull_request_matched_by_branch(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-7")
        await _deliver(client, session_factory, test_integration,
                       pr_payload("Tidy up", head_ref="feature/ABC-7-cleanup", number=500), "pull_request")
        assert (await _load(session_factory, Issue, issue.id)).status == "development"

    async def test_pull_request_matched_by_github_number(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-1001", github_issue_number=31)
        await _deliver(client, session_factory, test_integration,
                       pr_payload("No key", number=31), "pull_request")
        assert (await _load(session_factory, Issue, issue.id)).status == "development"

    async def test_same_status_is_ignored(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-42", status="development")
        webhook = await _deliver(client, session_factory, test_integration,
                                 pr_payload("Fix ABC-42"), "pull_request")
        assert webhook.status == WebhookStatus.IGNORED
        assert webhook.actions == []
        assert (await _load(session_factory, Issue, issue.id)).status == "development"

    async def test_unmapped_action_is_ignored(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        await make_issue(db_session, test_project, "ABC-42")
        webhook = await _deliver(client, session_factory, test_integration,
                                 pr_payload("Fix ABC-42", action="labeled"), "pull_request")
        assert webhook.status == WebhookStatus.IGNORED

    async def test_push_closing_reference(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        target = await make_issue(db_session, test_project, "ABC-42")
        other = await make_issue(db_session, test_project, "ABC-142")
        webhook = await _deliver(client, session_factory, test_integration,
                                 push_payload("fixes #42", "wip on 142"), "push")

        assert webhook.status == WebhookStatus.PROCESSED
        assert [a["to_status"] for a in webhook.actions] == ["released"]
        assert webhook.actions[0]["description"] == "Transitioned issue ABC-42 from backlog to released due to commit"
        assert (await _load(session_factory, Issue, target.id)).status == "released"
        assert (await _load(session_factory, Issue, other.id)).status == "backlog"

    async def test_issue_event_by_github_number(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-1001", status="acceptance", github_issue_number=12)
        payload = {"action": "closed", "repository": REPO,
                   "issue": {"id": 5, "number": 12, "title": "t", "state": "closed",
                             "labels": [{"name": "bug"}], "assignees": [{"login": "dev"}]}}
        webhook = await _deliver(client, session_factory, test_integration, payload, "issues")
        assert webhook.issue["labels"] == ["bug"]
        assert webhook.actions[0]["description"].endswith("due to GitHub issue closed")
        assert (await _load(session_factory, Issue, issue.id)).status == "released"

    async def test_review_matches_on_action_not_state(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        issue = await make_issue(db_session, test_project, "ABC-42", status="development")
        payload = pr_payload("Fix ABC-42", action="submitted")
        payload["review"] = {"id": 3, "state": "approved", "body": "LGTM", "user": {"login": "rev"}}
        webhook = await _deliver(client, session_factory, test_integration, payload, "pull_request_review")
        assert webhook.review["state"] == "approved"
        assert webhook.actions[0]["description"] == (
            "Transitioned issue ABC-42 from development to acceptance due to review approved"
        )
        assert (await _load(session_factory, Issue, issue.id)).status == "acceptance"

    async def test_check_run_records_informational_action(self, client: AsyncClient, session_factory, test_integration):
        payload = {"action": "completed", "repository": REPO,
                   "check_run": {"id": 1, "name": "ci", "status": "completed",
                                 "conclusion": "success", "html_url": "https://ci"}}
        webhook = await _deliver(client, session_factory, test_integration, payload, "check_run")
        assert webhook.status == WebhookStatus.PROCESSED
        assert webhook.actions[0]["type"] == "no_action"
        assert webhook.actions[0]["description"] == "Check run success for ci"

    async def test_processed_webhook_is_not_reprocessed(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        await make_issue(db_session, test_project, "ABC-42")
        webhook = await _deliver(client, session_factory, test_integration, pr_payload("Fix ABC-42"), "pull_request")
        assert await process_webhook(webhook.id, session_factory) == WebhookStatus.PROCESSED
        again = await _load(session_factory, GitHubWebhook, webhook.id)
        assert again.actions == webhook.actions

    async def test_failure_is_recorded_not_raised(self, client: AsyncClient, db_session, session_factory, test_project, test_integration):
        await make_issue(db_session, test_project, "ABC-42")
        test_integration.workflow_mappings = ["not-a-mapping"]
        await db_session.commit()

        body, headers = signed_webhook(pr_payload("Fix ABC-42"), "pull_request")
        res = await client.post(f"/api/v1/github/webhook/{test_integration.id}", content=body, headers=headers)
        assert res.status_code == 200
        webhook_id = res.json()["webhook_id"]
        assert await process_webhook(webhook_id, session_factory) == WebhookStatus.FAILED

        webhook = await _load(session_factory, GitHubWebhook, webhook_id)
        assert webhook.status == WebhookStatus.FAILED
        assert webhook.error_message
        integration = await _load(session_factory, GitHubIntegration, test_integration.id)
        assert integration.sync_status == SyncStatus.ERROR
        assert integration.last_error["event"] == "pull_request"
        assert integration.last_error["timestamp"]

    async def test_missing_webhook_does_not_raise(self, session_factory):
        assert await process_webhook("nope", session_factory) == WebhookStatus.FAILED

    async def test_stale_status_skips_transition(self, db_session, session_factory, test_project):
        issue = await make_issue(db_session, test_project, "ABC-42")
        async with session_factory() as other:
            fresh = await other.get(Issue, issue.id)
            fresh.status = "analysis"
            await other.commit()

        mapping = {"github_event": "pull_request", "github_status": "opened", "project_status": "development"}
        assert await apply_transition(db_session, issue, mapping, "PR opened") is None
        await db_session.commit()
        assert (await _load(session_factory, Issue, issue.id)).status == "analysis"


@pytest.mark.asyncio
class TestRetry:
    async def test_retry_processed_is_bad_request(self, client: AsyncClient, db_session, session_factory, test_project, test_integration, manager_user):
        from tests.conftest import get_auth_headers
        await make_issue(db_session, test_project, "ABC-42")
        webhook = await _deliver(client, session_factory, test_integration, pr_payload("Fix ABC-42"), "pull_request")
        res = await client.post(f"/api/v1/github/webhooks/{webhook.id}/retry", headers=get_auth_headers(manager_user))
        assert res.status_code == 400
        assert (await _load(session_factory, GitHubWebhook, webhook.id)).status == WebhookStatus.PROCESSED

    async def test_retry_failed_reprocesses(self, client: AsyncClient, db_session, session_factory, test_project, test_integration, manager_user):
        from tests.conftest import get_auth_headers
        issue = await make_issue(db_session, test_project, "ABC-42")
        test_integration.workflow_mappings = ["not-a-mapping"]
        await db_session.commit()
        webhook = await _deliver(client, session_factory, test_integration, pr_payload("Fix ABC-42"), "pull_request")
        assert webhook.status == WebhookStatus.FAILED

        test_integration.workflow_mappings = WORKFLOW_MAPPINGS
        await db_session.commit()
        res = await client.post(f"/api/v1/github/webhooks/{webhook.id}/retry", headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert await process_webhook(webhook.id, session_factory) == WebhookStatus.PROCESSED

        retried = await _load(session_factory, GitHubWebhook, webhook.id)
        assert retried.error_message is None
        assert retried.actions[0]["to_status"] == "development"
        assert (await _load(session_factory, Issue, issue.id)).status == "development"

    async def test_retry_requires_permission(self, client: AsyncClient, session_factory, test_integration, developer_user):
        from tests.conftest import get_auth_headers
        webhook = await _deliver(client, session_factory, test_integration, pr_payload("x"), "pull_request")
        res = await client.post(f"/api/v1/github/webhooks/{webhook.id}/retry", headers=get_auth_headers(developer_user))
        assert res.status_code == 403
        assert res.json()["detail"]["required"] == "github.webhooks"

    async def test_retry_unknown_webhook(self, client: AsyncClient, manager_user):
        from tests.conftest import get_auth_headers
        res = await client.post("/api/v1/github/webhooks/nope/retry", headers=get_auth_headers(manager_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestRecordBuilder:
    async def test_action_defaults_to_unknown(self, test_integration):
        webhook = build_webhook_record(test_integration, "d1", "push", push_payload("x"), {})
        assert webhook.action == "unknown"
        assert webhook.status == WebhookStatus.RECEIVED
        assert webhook.project_id == test_integration.project_id
        assert webhook.commits[0]["author"]["email"] == "dev@acme.io"

    async def test_secret_used_for_fixture_signatures(self):
        body, headers = signed_webhook({}, "push")
        assert verify_signature(WEBHOOK_SECRET, body, headers["X-Hub-Signature-256"])
