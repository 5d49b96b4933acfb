# tests/test_github_integration.py: integration configuration, connection check and delivery views
import httpx
import pytest
from httpx import AsyncClient

from github_webhooks import process_webhook
from models import GitHubIntegration, GitHubWebhook, SyncStatus
from routers import github as github_router
from tests.conftest import get_auth_headers, make_issue, signed_webhook

MAPPING = {
    "issue_type": "task",
    "github_status_mappings": [
        {"github_event": "pull_request", "github_status": "opened", "project_status": "development"},
    ],
}


def _mock_github(monkeypatch, handler):
    monkeypatch.setattr(
        github_router, "_github_client",
        lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.github.com"),
    )


@pytest.mark.asyncio
class TestIntegrationConfig:
    async def test_create_generates_secret_and_hides_it(self, client: AsyncClient, db_session, test_project, manager_user):
        res = await client.post(f"/api/v1/github/integration/{test_project.id}", json={
            "repository_owner": "acme",
            "repository_name": "widgets",
            "access_token": "ghp_secret",
            "workflow_mappings": [MAPPING],
        }, headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        data = res.json()
        assert data["created"] is True
        integration = data["integration"]
        assert integration["repository"]["full_name"] == "acme/widgets"
        assert integration["repository"]["url"] == "https://github.com/acme/widgets"
        assert integration["has_access_token"] is True
        assert integration["webhook_url"].endswith(f"/api/v1/github/webhook/{integration['id']}")
        assert "webhook_secret" not in integration
        assert "ghp_secret" not in res.text

        stored = await db_session.get(GitHubIntegration, integration["id"])
        assert len(stored.webhook_secret) == 64
        assert stored.workflow_mappings[0]["github_status_mappings"][0]["github_event"] == "pull_request"

    async def test_upsert_replaces_existing(self, client: AsyncClient, test_project, test_integration, manager_user):
        res = await client.post(f"/api/v1/github/integration/{test_project.id}", json={
            "repository_owner": "acme", "repository_name": "gadgets",
        }, headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert res.json()["created"] is False
        assert res.json()["integration"]["id"] == test_integration.id
        assert res.json()["integration"]["repository"]["full_name"] == "acme/gadgets"

    async def test_owner_and_name_required(self, client: AsyncClient, test_project, manager_user):
        res = await client.post(f"/api/v1/github/integration/{test_project.id}", json={
            "repository_owner": "acme",
        }, headers=get_auth_headers(manager_user))
        assert res.status_code == 400

    async def test_unknown_mapping_event_rejected(self, client: AsyncClient, test_project, manager_user):
        res = await client.post(f"/api/v1/github/integration/{test_project.id}", json={
            "repository_owner": "acme", "repository_name": "widgets",
            "workflow_mappings": [{"issue_type": "task", "github_status_mappings": [
                {"github_event": "deployment", "github_status": "any", "project_status": "released"},
            ]}],
        }, headers=get_auth_headers(manager_user))
        assert res.status_code == 400

    async def test_configuration_requires_permission(self, client: AsyncClient, test_project, developer_user):
        res = await client.post(f"/api/v1/github/integration/{test_project.id}", json={
            "repository_owner": "acme", "repository_name": "widgets",
        }, headers=get_auth_headers(developer_user))
        assert res.status_code == 403
        assert res.json()["detail"]["required"] == "github.integration"

    async def test_get_and_patch(self, client: AsyncClient, test_project, test_integration, manager_user, viewer_user):
        res = await client.get(f"/api/v1/github/integration/{test_project.id}", headers=get_auth_headers(viewer_user))
        assert res.status_code == 200
        assert res.json()["is_active"] is True

        res = await client.patch(f"/api/v1/github/integration/{test_project.id}", json={"is_active": False},
                                 headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert res.json()["is_active"] is False

    @pytest.mark.parametrize("field", ["webhook_secret", "workflow_mappings", "webhook_events", "is_active", "sync_status"])
    async def test_patch_null_for_required_field(self, client: AsyncClient, db_session, test_project, test_integration, manager_user, field):
        res = await client.patch(f"/api/v1/github/integration/{test_project.id}", json={field: None},
                                 headers=get_auth_headers(manager_user))
        assert res.status_code == 400
        await db_session.refresh(test_integration)
        assert test_integration.webhook_secret == "test-webhook-secret"
        assert test_integration.is_active is True
        assert test_integration.workflow_mappings

    async def test_delete(self, client: AsyncClient, test_project, test_integration, manager_user):
        res = await client.delete(f"/api/v1/github/integration/{test_project.id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        res = await client.get(f"/api/v1/github/integration/{test_project.id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestConnectionCheck:
    async def test_success_marks_active(self, client: AsyncClient, monkeypatch, db_session, test_project, test_integration, manager_user):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/repos/acme/widgets"
            assert request.headers["Authorization"] == "Bearer ghp_test"
            return httpx.Response(200, json={"full_name": "acme/widgets", "private": True, "default_branch": "main"})

        _mock_github(monkeypatch, handler)
        res = await client.post(f"/api/v1/github/test-connection/{test_project.id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 200
        assert res.json()["repository"]["default_branch"] == "main"

        await db_session.refresh(test_integration)
        assert test_integration.sync_status == SyncStatus.ACTIVE
        assert test_integration.last_sync_at is not None

    async def test_api_error_records_snapshot(self, client: AsyncClient, monkeypatch, db_session, test_project, test_integration, manager_user):
        _mock_github(monkeypatch, lambda request: httpx.Response(404, json={"message": "Not Found"}))
        res = await client.post(f"/api/v1/github/test-connection/{test_project.id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 400

        await db_session.refresh(test_integration)
        assert test_integration.sync_status == SyncStatus.ERROR
        assert test_integration.last_error["event"] == "test_connection"

    async def test_transport_error(self, client: AsyncClient, monkeypatch, test_project, test_integration, manager_user):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        _mock_github(monkeypatch, handler)
        res = await client.post(f"/api/v1/github/test-connection/{test_project.id}", headers=get_auth_headers(manager_user))
        assert res.status_code == 502


@pytest.mark.asyncio
class TestDeliveryViews:
    async def _post(self, client, session_factory, integration, payload, event):
        body, headers = signed_webhook(payload, event)
        res = await client.post(f"/api/v1/github/webhook/{integration.id}", content=body, headers=headers)
        await process_webhook(res.json()["webhook_id"], session_factory)
        return res.json()["webhook_id"]

    async def test_list_and_stats(self, client: AsyncClient, db_session, session_factory, test_project, test_integration, viewer_user):
        await make_issue(db_session, test_project, "ABC-42")
        repo = {"full_name": "acme/widgets", "owner": {"login": "acme"}}
        processed = await self._post(client, session_factory, test_integration, {
            "action": "opened", "repository": repo,
            "pull_request": {"number": 1, "title": "Fix ABC-42", "head": {"ref": "x"}},
        }, "pull_request")
        await self._post(client, session_factory, test_integration, {"action": "created", "repository": repo}, "star")

        headers = get_auth_headers(viewer_user)
        res = await client.get(f"/api/v1/github/webhooks/{test_project.id}", params={"status": "processed"}, headers=headers)
        assert res.status_code == 200
        assert [w["id"] for w in res.json()] == [processed]
        assert res.json()[0]["event_summary"] == "pull_request:opened - acme/widgets"

        res = await client.get(f"/api/v1/github/stats/{test_project.id}", headers=headers)
        assert res.status_code == 200
        stats = res.json()
        assert stats["total_events"] == 2
        assert stats["processed_events"] == 1
        assert stats["ignored_events"] == 1
        assert stats["failed_events"] == 0
        assert stats["success_rate"] == 50.0
        assert len(stats["recent_events"]) == 2
        assert stats["integration"]["sync_status"] == "active"

    async def test_event_summary_without_repository(self):
        webhook = GitHubWebhook(event_type="push", action="unknown", repository=None)
        assert webhook.event_summary == "push:unknown - Unknown"
