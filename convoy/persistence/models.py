"""
Convoy Persistence Models

Dataclasses that map to SQLite tables:
- Type safety with enums and Optional types
- Easy serialization to/from database rows
- JSON field handling for job payloads and dependency descriptors
"""

from __future__ import annotations

import json
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


# ============================================================================
# ENUMS
# ============================================================================


class ConversationMode(str, Enum):
    """Permission strictness for a conversation."""

    PLAN = "plan"
    BYPASS_PERMISSIONS = "bypassPermissions"


class JobKind(str, Enum):
    """Closed set of job kinds the queue knows how to run and classify."""

    WARM_HOT_CACHE = "warm_hot_cache"
    INITIALIZE_SESSION = "initialize_session"
    SEND_MESSAGE = "send_message"
    DELETE_PROJECT_DIRECTORY = "delete_project_directory"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def now_iso() -> str:
    """Get current datetime as ISO string."""
    return datetime.now().isoformat()


def slugify(value: str) -> str:
    """Lowercase, dash-separated slug for a repository name."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "repository"


def parse_json_or_dict(value: str | dict | None) -> dict:
    """Parse JSON string to dict, or return empty dict."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    try:
        result = json.loads(value)
        return result if isinstance(result, dict) else {}
    except (json.JSONDecodeError, TypeError):
        return {}


def to_json(value: list | dict | None) -> str | None:
    """Convert list or dict to JSON string."""
    if value is None:
        return None
    return json.dumps(value)


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO datetime string to datetime object."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (ValueError, TypeError):
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ============================================================================
# CATALOG ENTITIES
# ============================================================================


@dataclass
class Repository:
    """
    A repository with a base checkout under storage.

    Maps to: repositories table
    """

    id: int | None = None
    name: str = ""
    slug: str = ""
    url: str = ""
    branch: str | None = None
    deploy_script: str | None = None
    last_pulled_at: datetime | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if not self.slug and self.name:
            self.slug = slugify(self.name)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Repository:
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            url=row["url"] or "",
            branch=row["branch"],
            deploy_script=row["deploy_script"],
            last_pulled_at=parse_datetime(row["last_pulled_at"]),
            created_at=parse_datetime(row["created_at"]) or datetime.now(),
            updated_at=parse_datetime(row["updated_at"]) or datetime.now(),
        )

    def to_row(self) -> tuple:
        """Convert to database row for INSERT (without id)."""
        return (
            self.name,
            self.slug,
            self.url,
            self.branch,
            self.deploy_script,
            _iso(self.last_pulled_at),
            _iso(self.created_at),
            _iso(self.updated_at),
        )


@dataclass
class Agent:
    """
    A named system prompt that can be attached to a conversation.

    Maps to: agents table
    """

    id: int | None = None
    name: str = ""
    description: str = ""
    prompt: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Agent:
        """Create from database row."""
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            prompt=row["prompt"] or "",
            created_at=parse_datetime(row["created_at"]) or datetime.now(),
        )


@dataclass
class Conversation:
    """
    A conversation with Claude against a repository checkout.

    Maps to: conversations table
    ``repository`` is None/empty for blank conversations, which run against
    the shared base directory instead of a private copy.
    """

    id: int | None = None
    user_id: int | None = None
    title: str = ""
    message: str = ""
    repository: str | None = None
    project_directory: str | None = None
    filename: str = ""
    claude_session_id: str | None = None
    is_processing: bool = False
    archived: bool = False
    mode: ConversationMode = ConversationMode.PLAN
    agent_id: int | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_blank(self) -> bool:
        return not self.repository

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Conversation:
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"] or "",
            message=row["message"] or "",
            repository=row["repository"],
            project_directory=row["project_directory"],
            filename=row["filename"] or "",
            claude_session_id=row["claude_session_id"],
            is_processing=bool(row["is_processing"]),
            archived=bool(row["archived"]),
            mode=ConversationMode(row["mode"]) if row["mode"] else ConversationMode.PLAN,
            agent_id=row["agent_id"],
            error_message=row["error_message"],
            created_at=parse_datetime(row["created_at"]) or datetime.now(),
            updated_at=parse_datetime(row["updated_at"]) or datetime.now(),
        )

    def to_row(self) -> tuple:
        """Convert to database row for INSERT (without id)."""
        return (
            self.user_id,
            self.title,
            self.message,
            self.repository,
            self.project_directory,
            self.filename,
            self.claude_session_id,
            1 if self.is_processing else 0,
            1 if self.archived else 0,
            self.mode.value,
            self.agent_id,
            self.error_message,
            _iso(self.created_at),
            _iso(self.updated_at),
        )


# ============================================================================
# JOB ENTITIES
# ============================================================================


@dataclass
class ResourceDependencies:
    """
    Resources a job depends on, published alongside its payload.

    The failure classifier reads only this descriptor to decide whether a
    dead-lettered job can run again.
    """

    repository: str | None = None
    conversation_id: int | None = None
    project_directory: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "conversation_id": self.conversation_id,
            "project_directory": self.project_directory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceDependencies:
        return cls(
            repository=data.get("repository"),
            conversation_id=data.get("conversation_id"),
            project_directory=data.get("project_directory"),
        )


@dataclass
class FailedJob:
    """
    A job that exhausted its retries.

    Maps to: failed_jobs table
    ``kind`` is None when the stored tag is not a known JobKind.
    """

    id: int | None = None
    uuid: str = field(default_factory=generate_id)
    kind: JobKind | None = None
    display_name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    dependencies: ResourceDependencies = field(default_factory=ResourceDependencies)
    exception: str = ""
    failed_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> FailedJob:
        """Create from database row."""
        try:
            kind: JobKind | None = JobKind(row["kind"])
        except ValueError:
            kind = None
        return cls(
            id=row["id"],
            uuid=row["uuid"],
            kind=kind,
            display_name=row["display_name"] or "",
            payload=parse_json_or_dict(row["payload"]),
            dependencies=ResourceDependencies.from_dict(parse_json_or_dict(row["dependencies"])),
            exception=row["exception"] or "",
            failed_at=parse_datetime(row["failed_at"]) or datetime.now(),
        )
