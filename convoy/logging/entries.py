"""
Log Entry Data Structures for Convoy.

Defines structured log entries for repository staging, Claude process
executions and job lifecycle events.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


def now_iso() -> str:
    """Get current timestamp in ISO 8601 format."""
    return datetime.now().isoformat()


class _JsonEntry:
    """Shared serialization for log entries."""

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)  # type: ignore[call-overload]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Create from dictionary, dropping unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})  # type: ignore[attr-defined]


@dataclass
class StageLogEntry(_JsonEntry):
    """Log entry for one phase of hot-cache staging."""

    timestamp: str  # ISO 8601
    event: str  # "start", "refreshed", "refresh_failed", "copied", "renamed", ...
    repository: str

    base_path: str = ""
    hot_path: str = ""
    temp_path: str = ""
    branch: str = ""

    duration_ms: int = 0
    error: str | None = None


@dataclass
class ProcessLogEntry(_JsonEntry):
    """Log entry for a Claude CLI execution."""

    # Identity
    timestamp: str  # ISO 8601
    execution_id: str  # UUID
    conversation_id: int | None = None

    # Input
    command: list[str] = field(default_factory=list)
    working_directory: str = ""
    session_file: str = ""
    resume_session_id: str | None = None

    # Output
    pid: int | None = None
    exit_code: int | None = None
    success: bool = False
    session_id: str | None = None
    response_count: int = 0
    malformed_lines: int = 0
    stderr: str = ""

    # Metrics
    duration_ms: int = 0

    error: str | None = None


@dataclass
class JobLogEntry(_JsonEntry):
    """Log entry for job lifecycle events."""

    timestamp: str  # ISO 8601
    job_id: str
    kind: str
    event: str  # "started", "succeeded", "retrying", "aborted", "failed"

    attempt: int = 1
    conversation_id: int | None = None
    repository: str | None = None
    backoff_seconds: float = 0.0
    duration_ms: int = 0
    error: str | None = None
