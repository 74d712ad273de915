"""
Convoy Repository - Database access layer

Provides all catalog operations: repositories, agents, conversations and
the dead-letter table of failed jobs.

Thread Safety:
- SQLite in WAL mode so separate worker processes can share the file
- One connection per repository instance, guarded by a re-entrant lock
  because blocking job phases run in worker threads
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from convoy.persistence.models import (
    Agent,
    Conversation,
    ConversationMode,
    FailedJob,
    JobKind,
    Repository,
    ResourceDependencies,
    generate_id,
    now_iso,
    slugify,
    to_json,
)

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Columns update_conversation() is allowed to touch
CONVERSATION_FIELDS = {
    "title",
    "repository",
    "project_directory",
    "filename",
    "claude_session_id",
    "is_processing",
    "archived",
    "mode",
    "agent_id",
    "error_message",
}


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection with the settings every Convoy store uses."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path,
        check_same_thread=False,  # We handle thread safety manually
        isolation_level=None,  # Autocommit mode
        timeout=30,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.executescript(SCHEMA_PATH.read_text())
    return conn


class ConvoyRepository:
    """
    Repository for all Convoy catalog operations.

    Usage:
        with ConvoyRepository(config.db_path) as repo:
            repo.add_repository("app", "git@github.com:acme/app.git")
            conversation = repo.create_conversation(Conversation(...))
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def __enter__(self) -> ConvoyRepository:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection, initializing if needed."""
        if self._conn is None:
            self.initialize()
        return self._conn  # type: ignore

    def initialize(self) -> None:
        """Open the connection and apply the schema."""
        with self._lock:
            if self._conn is not None:
                return
            self._conn = connect(self.db_path)
            logger.info(f"Initialized Convoy database at {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    # =========================================================================
    # REPOSITORY OPERATIONS
    # =========================================================================

    def add_repository(
        self,
        name: str,
        url: str = "",
        deploy_script: str | None = None,
        branch: str | None = None,
    ) -> Repository:
        """Register a repository whose base checkout lives under storage."""
        repository = Repository(
            name=name,
            slug=slugify(name),
            url=url,
            branch=branch,
            deploy_script=deploy_script,
        )
        cursor = self._execute(
            """INSERT INTO repositories
               (name, slug, url, branch, deploy_script, last_pulled_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            repository.to_row(),
        )
        repository.id = cursor.lastrowid
        logger.info(f"Registered repository: {name}")
        return repository

    def get_repository(self, name: str) -> Repository | None:
        """Get repository by name."""
        row = self._fetchone("SELECT * FROM repositories WHERE name = ?", (name,))
        return Repository.from_row(row) if row else None

    def list_repositories(self) -> list[Repository]:
        """List all repositories by name."""
        rows = self._fetchall("SELECT * FROM repositories ORDER BY name")
        return [Repository.from_row(row) for row in rows]

    def delete_repository(self, name: str) -> bool:
        """Delete a repository record. Returns True if a row was removed."""
        cursor = self._execute("DELETE FROM repositories WHERE name = ?", (name,))
        if cursor.rowcount:
            logger.info(f"Deleted repository record: {name}")
        return cursor.rowcount > 0

    def mark_repository_pulled(self, name: str) -> None:
        """Stamp the last successful refresh of the base checkout."""
        now = now_iso()
        self._execute(
            "UPDATE repositories SET last_pulled_at = ?, updated_at = ? WHERE name = ?",
            (now, now, name),
        )

    # =========================================================================
    # AGENT OPERATIONS
    # =========================================================================

    def add_agent(self, name: str, prompt: str, description: str = "") -> Agent:
        """Create an agent."""
        agent = Agent(name=name, prompt=prompt, description=description)
        cursor = self._execute(
            "INSERT INTO agents (name, description, prompt, created_at) VALUES (?, ?, ?, ?)",
            (agent.name, agent.description, agent.prompt, agent.created_at.isoformat()),
        )
        agent.id = cursor.lastrowid
        return agent

    def get_agent(self, agent_id: int) -> Agent | None:
        """Get agent by ID."""
        row = self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return Agent.from_row(row) if row else None

    def get_agent_by_name(self, name: str) -> Agent | None:
        """Get agent by name."""
        row = self._fetchone("SELECT * FROM agents WHERE name = ?", (name,))
        return Agent.from_row(row) if row else None

    def list_agents(self) -> list[Agent]:
        """List all agents by name."""
        return [Agent.from_row(row) for row in self._fetchall("SELECT * FROM agents ORDER BY name")]

    # =========================================================================
    # CONVERSATION OPERATIONS
    # =========================================================================

    def create_conversation(self, conversation: Conversation) -> Conversation:
        """Insert a conversation and return it with its new id."""
        cursor = self._execute(
            """INSERT INTO conversations
               (user_id, title, message, repository, project_directory, filename,
                claude_session_id, is_processing, archived, mode, agent_id,
                error_message, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            conversation.to_row(),
        )
        conversation.id = cursor.lastrowid
        logger.info(f"Created conversation {conversation.id}")
        return conversation

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        """Get a fresh copy of a conversation by ID."""
        row = self._fetchone("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return Conversation.from_row(row) if row else None

    def conversation_exists(self, conversation_id: int) -> bool:
        """Check whether the conversation row still exists."""
        row = self._fetchone("SELECT 1 FROM conversations WHERE id = ?", (conversation_id,))
        return row is not None

    def list_conversations(
        self,
        archived: bool = False,
        user_id: int | None = None,
    ) -> list[Conversation]:
        """List conversations, newest first."""
        if user_id is None:
            rows = self._fetchall(
                "SELECT * FROM conversations WHERE archived = ? ORDER BY created_at DESC, id DESC",
                (1 if archived else 0,),
            )
        else:
            rows = self._fetchall(
                """SELECT * FROM conversations
                   WHERE archived = ? AND user_id = ?
                   ORDER BY created_at DESC, id DESC""",
                (1 if archived else 0, user_id),
            )
        return [Conversation.from_row(row) for row in rows]

    def update_conversation(self, conversation_id: int, **changes: Any) -> bool:
        """
        Update selected conversation columns and bump updated_at.

        Returns:
            True if the row exists and was updated
        """
        unknown = set(changes) - CONVERSATION_FIELDS
        if unknown:
            raise ValueError(f"Cannot update conversation fields: {sorted(unknown)}")

        columns = []
        values: list[Any] = []
        for name, value in changes.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, ConversationMode):
                value = value.value
            columns.append(f"{name} = ?")
            values.append(value)

        columns.append("updated_at = ?")
        values.append(now_iso())
        values.append(conversation_id)

        cursor = self._execute(
            f"UPDATE conversations SET {', '.join(columns)} WHERE id = ?",
            tuple(values),
        )
        return cursor.rowcount > 0

    def touch_conversation(self, conversation_id: int) -> None:
        """Bump updated_at so polling clients see liveness."""
        self._execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (now_iso(), conversation_id),
        )

    def delete_conversation(self, conversation_id: int) -> bool:
        """Delete a conversation row."""
        cursor = self._execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        return cursor.rowcount > 0

    # =========================================================================
    # FAILED JOB OPERATIONS
    # =========================================================================

    def record_failed_job(
        self,
        kind: JobKind | str,
        display_name: str,
        payload: dict[str, Any],
        dependencies: ResourceDependencies,
        exception: str,
    ) -> FailedJob:
        """Store a job that exhausted its retries."""
        kind_value = kind.value if isinstance(kind, JobKind) else kind
        job_uuid = generate_id()
        failed_at = datetime.now()
        cursor = self._execute(
            """INSERT INTO failed_jobs
               (uuid, kind, display_name, payload, dependencies, exception, failed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                job_uuid,
                kind_value,
                display_name,
                to_json(payload),
                to_json(dependencies.to_dict()),
                exception,
                failed_at.isoformat(),
            ),
        )
        logger.warning(f"Recorded failed job {display_name} ({job_uuid[:8]})")
        return self.get_failed_job(cursor.lastrowid)  # type: ignore[return-value]

    def get_failed_job(self, failed_job_id: int) -> FailedJob | None:
        """Get failed job by ID."""
        row = self._fetchone("SELECT * FROM failed_jobs WHERE id = ?", (failed_job_id,))
        return FailedJob.from_row(row) if row else None

    def list_failed_jobs(self) -> list[FailedJob]:
        """List failed jobs, oldest first."""
        rows = self._fetchall("SELECT * FROM failed_jobs ORDER BY id")
        return [FailedJob.from_row(row) for row in rows]

    def delete_failed_job(self, failed_job_id: int) -> bool:
        """Remove a failed job record."""
        cursor = self._execute("DELETE FROM failed_jobs WHERE id = ?", (failed_job_id,))
        return cursor.rowcount > 0
