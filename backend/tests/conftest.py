# tests/conftest.py: shared test fixtures
import os
import json
import uuid
from typing import Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"

from models import Base, User, Project, Issue, GitHubIntegration, ProjectRole
from auth import AuthService, _login_attempts
from database import get_db_session, get_session_factory
from github_webhooks import compute_signature
from permissions import initialize_default_roles
from main import app

WEBHOOK_SECRET = "test-webhook-secret"

WORKFLOW_MAPPINGS = [
    {
        "issue_type": "task",
        "github_status_mappings": [
            {"github_event": "pull_request", "github_status": "opened", "project_status": "development"},
            {"github_event": "pull_request", "github_status": "closed", "project_status": "acceptance"},
            {"github_event": "issue", "github_status": "closed", "project_status": "released"},
            {"github_event": "review", "github_status": "submitted", "project_status": "acceptance"},
            {"github_event": "commit", "github_status": "pushed", "project_status": "released"},
        ],
        "branch_mappings": [{"branch_pattern": "feature/*", "issue_type": "story"}],
    },
]


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB and background-session dependencies"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_login_attempts():
    """The lockout counter is process-wide; start every test from zero"""
    _login_attempts.clear()
    yield
    _login_attempts.clear()


@pytest_asyncio.fixture
async def roles(db_session):
    """Seeded system roles keyed by name"""
    seeded, _ = await initialize_default_roles(db_session)
    return {r.name: r for r in seeded}


async def make_user(db_session, name: str, role=None, email: Optional[str] = None,
                    password: str = "Password123!", is_active: bool = True) -> User:
    user = User(
        id=str(uuid.uuid4()),
        name=name,
        email=email or f"{name.lower().replace(' ', '.')}@tracker.dev",
        password_hash=AuthService.hash_password(password),
        role_id=role.id if role is not None else None,
        is_active=is_active,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def admin_user(db_session, roles):
    return await make_user(db_session, "Admin User", roles["admin"])


@pytest_asyncio.fixture
async def manager_user(db_session, roles):
    return await make_user(db_session, "Manager User", roles["manager"])


@pytest_asyncio.fixture
async def developer_user(db_session, roles):
    return await make_user(db_session, "Developer User", roles["developer"])


@pytest_asyncio.fixture
async def viewer_user(db_session, roles):
    return await make_user(db_session, "Viewer User", roles["viewer"])


@pytest_asyncio.fixture
async def test_project(db_session, manager_user, developer_user):
    """Project ABC owned by the manager, with the developer as editor"""
    project = Project(
        id=str(uuid.uuid4()),
        key="ABC",
        name="Alpha Bravo Charlie",
        owner_id=manager_user.id,
        members=[
            {"user_id": manager_user.id, "role": ProjectRole.ADMIN.value},
            {"user_id": developer_user.id, "role": ProjectRole.EDITOR.value},
        ],
    )
    db_session.add(project)
    await db_session.commit()
    await db_session.refresh(project)
    return project


async def make_issue(db_session, project, key: str, status: str = "backlog",
                     github_issue_number: Optional[int] = None, reporter_id: Optional[str] = None) -> Issue:
    issue = Issue(
        id=str(uuid.uuid4()),
        key=key,
        title=f"Issue {key}",
        status=status,
        project_id=project.id,
        reporter_id=reporter_id or project.owner_id,
        github_issue_number=github_issue_number,
    )
    db_session.add(issue)
    await db_session.commit()
    await db_session.refresh(issue)
    return issue


@pytest_asyncio.fixture
async def test_integration(db_session, test_project, manager_user):
    integration = GitHubIntegration(
        id=str(uuid.uuid4()),
        project_id=test_project.id,
        repository_owner="acme",
        repository_name="widgets",
        repository_full_name="acme/widgets",
        access_token="ghp_test",
        webhook_secret=WEBHOOK_SECRET,
        workflow_mappings=WORKFLOW_MAPPINGS,
        auto_transition={"enabled": True},
        webhook_events=["push", "pull_request", "issues", "pull_request_review", "check_run"],
        is_active=True,
        created_by=manager_user.id,
    )
    db_session.add(integration)
    await db_session.commit()
    await db_session.refresh(integration)
    return integration


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(payload: dict, event: str, secret: str = WEBHOOK_SECRET,
                   delivery_id: Optional[str] = None):
    """Raw body plus GitHub-style headers signed with ``secret``"""
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery_id or str(uuid.uuid4()),
        "X-Hub-Signature-256": compute_signature(secret, body),
    }
    return body, headers
