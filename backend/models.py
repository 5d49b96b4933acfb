# models.py: database models for the issue tracker
# - String UUID primary keys everywhere
# - Dynamic roles: flat permission-token lists, referenced by users
# - Project membership, project vocabularies and workflow mappings stored as JSON documents
# - GitHub webhook deliveries with an explicit processing status

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class ProjectRole(str, PyEnum):
    ADMIN = "admin"
    EDITOR = "editor"
    ASSIGNEE = "assignee"


class ProjectStatus(str, PyEnum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BoardType(str, PyEnum):
    SCRUM = "scrum"
    KANBAN = "kanban"


class SyncStatus(str, PyEnum):
    ACTIVE = "active"
    ERROR = "error"
    PAUSED = "paused"


class WebhookStatus(str, PyEnum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"


class GitHubEvent(str, PyEnum):
    """Event names used on the mapping side (not the X-GitHub-Event header)."""
    PULL_REQUEST = "pull_request"
    ISSUE = "issue"
    COMMIT = "commit"
    REVIEW = "review"
    CHECK_RUN = "check_run"


class WebhookActionType(str, PyEnum):
    ISSUE_TRANSITION = "issue_transition"
    ISSUE_CREATED = "issue_created"
    ISSUE_UPDATED = "issue_updated"
    COMMENT_ADDED = "comment_added"
    NO_ACTION = "no_action"


# ============================================================
# ROLES & USERS
# ============================================================

class Role(Base):
    """Named bundle of permission tokens (``resource.action``)."""
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    permissions = Column(JSON, nullable=False, default=list)
    is_system = Column(Boolean, default=False, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    organization_id = Column(String, nullable=True, index=True)
    # Plain user ids; users already reference roles
    created_by = Column(String, nullable=True)
    last_modified_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    # Reference only; permissions are always resolved through the role row
    role_id = Column(String, ForeignKey("roles.id"), nullable=True, index=True)
    avatar_url = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# PROJECTS & ISSUES
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    key = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # [{"user_id": str, "role": "admin" | "editor" | "assignee"}]
    members = Column(JSON, nullable=False, default=list)
    board_type = Column(SQLEnum(BoardType), default=BoardType.KANBAN, nullable=False)
    status = Column(SQLEnum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Issue(Base):
    __tablename__ = "issues"

    id = Column(String, primary_key=True, default=new_uuid)
    key = Column(String, unique=True, nullable=False, index=True)  # e.g. "ABC-1001"
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    issue_type = Column(String, default="task", nullable=False)
    # Opaque string from the project's status vocabulary
    status = Column(String, default="backlog", nullable=False, index=True)
    priority = Column(String, default="medium", nullable=False)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    reporter_id = Column(String, ForeignKey("users.id"), nullable=False)
    assignees = Column(JSON, nullable=False, default=list)
    story_points = Column(Integer, default=0)
    tags = Column(JSON, nullable=False, default=list)
    github_issue_number = Column(Integer, nullable=True, index=True)
    sprint_id = Column(String, ForeignKey("sprints.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_issue_project_status", "project_id", "status"),
    )


class Sprint(Base):
    __tablename__ = "sprints"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    goal = Column(Text, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "name", name="uq_sprint_project_name"),
    )


class ProjectConfig(Base):
    """Per-project vocabulary: issue types, custom fields, statuses, priorities"""
    __tablename__ = "project_configs"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True)
    issue_types = Column(JSON, nullable=False, default=list)
    custom_fields = Column(JSON, nullable=False, default=list)
    statuses = Column(JSON, nullable=False, default=list)
    priorities = Column(JSON, nullable=False, default=list)
    version = Column(Integer, default=1, nullable=False)
    last_modified_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ActivityLog(Base):
    """Append-only record of project, member and issue changes"""
    __tablename__ = "activity_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    action = Column(String, nullable=False, index=True)
    actor_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    project_id = Column(String, nullable=True, index=True)
    issue_id = Column(String, nullable=True, index=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


# ============================================================
# GITHUB INTEGRATION
# ============================================================

class GitHubIntegration(Base):
    __tablename__ = "github_integrations"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True)

    repository_owner = Column(String, nullable=False)
    repository_name = Column(String, nullable=False)
    repository_full_name = Column(String, nullable=False, index=True)

    github_app_id = Column(String, nullable=True)
    installation_id = Column(String, nullable=True)
    access_token = Column(String, nullable=True)

    # [{"issue_type", "github_status_mappings": [...], "branch_mappings": [...]}]
    workflow_mappings = Column(JSON, nullable=False, default=list)
    auto_transition = Column(JSON, nullable=False, default=dict)

    webhook_secret = Column(String, nullable=False)
    webhook_url = Column(String, nullable=True)
    webhook_events = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, default=True, index=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(SQLEnum(SyncStatus), default=SyncStatus.ACTIVE, nullable=False)
    last_error = Column(JSON, nullable=True)  # {"message", "timestamp", "event"}

    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    last_modified_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def repository_url(self) -> str:
        return f"https://github.com/{self.repository_full_name}"


class GitHubWebhook(Base):
    """One row per received GitHub delivery"""
    __tablename__ = "github_webhooks"

    id = Column(String, primary_key=True, default=new_uuid)
    delivery_id = Column(String, unique=True, nullable=False)
    event_type = Column(String, nullable=False)
    action = Column(String, nullable=False, default="unknown")

    repository = Column(JSON, nullable=False, default=dict)
    issue = Column(JSON, nullable=True)
    pull_request = Column(JSON, nullable=True)
    review = Column(JSON, nullable=True)
    commits = Column(JSON, nullable=True)
    check_run = Column(JSON, nullable=True)

    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    integration_id = Column(String, ForeignKey("github_integrations.id", ondelete="CASCADE"), nullable=True, index=True)

    status = Column(SQLEnum(WebhookStatus), default=WebhookStatus.RECEIVED, nullable=False, index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    actions = Column(JSON, nullable=False, default=list)

    raw_payload = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_webhook_event_action", "event_type", "action"),
    )

    @property
    def event_summary(self) -> str:
        full_name = (self.repository or {}).get("full_name") or "Unknown"
        return f"{self.event_type}:{self.action} - {full_name}"


# ============================================================
# SYSTEM CONFIGURATION (singleton)
# ============================================================

class SystemConfig(Base):
    __tablename__ = "system_config"

    id = Column(String, primary_key=True, default=new_uuid)
    # Fixed value; the unique constraint guarantees a single row
    singleton_key = Column(String, nullable=False, default="default")
    field_types = Column(JSON, nullable=False, default=list)
    cost_categories = Column(JSON, nullable=False, default=list)
    validation_rules = Column(JSON, nullable=False, default=dict)
    ui_settings = Column(JSON, nullable=False, default=dict)
    workflow_templates = Column(JSON, nullable=False, default=list)
    version = Column(String, default="1.0.0")
    last_updated = Column(DateTime(timezone=True), default=utcnow)
    updated_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("singleton_key", name="uq_system_config_singleton"),
    )
