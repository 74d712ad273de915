"""
Session Store - one JSON document per conversation.

A session file is a JSON array of exchange entries:

    {
        "sessionId": "...",
        "role": "user",
        "userMessage": "...",
        "timestamp": "2026-01-01T10:00:00+00:00",
        "isComplete": false,
        "repositoryPath": "/path/to/project",
        "rawJsonResponses": [...],
        "responseTimestamp": null
    }

Every write is a read-merge-write of the whole document under a per-path
advisory lock. Callers always pass the full accumulated response list, so a
reader sees a complete snapshot no matter when it looks.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from convoy.sessions.lock import FileLock
from convoy.sessions.storage import LocalStorage

logger = logging.getLogger(__name__)

DEFAULT_DIRECTORY = "claude-sessions"


def timestamp() -> str:
    """ISO 8601 timestamp with local offset."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


def merge_exchange(
    entries: list[dict[str, Any]],
    user_message: str,
    session_id: str | None,
    responses: list[dict[str, Any]],
    is_complete: bool,
    repository_path: str | None,
) -> list[dict[str, Any]]:
    """
    Apply one snapshot to the entry list and return it.

    The trailing entry is updated in place when it is incomplete and carries
    the same user message; its timestamp and role are kept. Otherwise a new
    entry is appended.
    """
    now = timestamp()

    if entries:
        last = entries[-1]
        if not last.get("isComplete") and last.get("userMessage") == user_message:
            merged = dict(last)
            merged.update(
                {
                    "rawJsonResponses": responses,
                    "isComplete": is_complete,
                    "timestamp": last.get("timestamp") or now,
                    "responseTimestamp": now if is_complete else None,
                    "sessionId": session_id or last.get("sessionId") or str(uuid.uuid4()),
                    "repositoryPath": repository_path or last.get("repositoryPath"),
                    "role": last.get("role") or "user",
                }
            )
            entries[-1] = merged
            return entries

    entries.append(
        {
            "sessionId": session_id or str(uuid.uuid4()),
            "role": "user",
            "userMessage": user_message,
            "timestamp": now,
            "isComplete": is_complete,
            "rawJsonResponses": responses,
            "repositoryPath": repository_path,
        }
    )
    return entries


class SessionStore:
    """
    Reads and writes conversation session files in a LocalStorage.

    Args:
        storage: Blob store holding the session documents
        directory: Key prefix for session files
        lock_timeout: Seconds to wait for the per-file lock
    """

    def __init__(
        self,
        storage: LocalStorage,
        directory: str = DEFAULT_DIRECTORY,
        lock_timeout: float = 10.0,
    ):
        self.storage = storage
        self.directory = directory.strip("/")
        self.lock_timeout = lock_timeout
        self.lock_dir = storage.path(self.directory) / ".locks"

    def key(self, filename: str) -> str:
        """Storage key for a session filename, prefixing the sessions directory."""
        if filename.startswith(f"{self.directory}/"):
            return filename
        return f"{self.directory}/{filename}"

    def path(self, filename: str) -> Path:
        return self.storage.path(self.key(filename))

    def _lock(self, key: str) -> FileLock:
        return FileLock(self.lock_dir, key, timeout=self.lock_timeout)

    def _load(self, key: str) -> list[dict[str, Any]]:
        if not self.storage.exists(key):
            return []
        content = self.storage.get(key)
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.warning(f"Session file {key} is not valid JSON, starting a fresh document")
            return []
        return data if isinstance(data, list) else []

    def _write(self, key: str, entries: list[dict[str, Any]]) -> None:
        self.storage.put(key, json.dumps(entries, indent=4, ensure_ascii=False))

    def read(self, filename: str) -> list[dict[str, Any]]:
        """Return all entries of a session file (empty if missing)."""
        return self._load(self.key(filename))

    def initialize(self, filename: str, user_message: str) -> None:
        """Replace the session file with a single incomplete entry for the first message."""
        key = self.key(filename)
        if not self.storage.exists(self.directory):
            self.storage.make_directory(self.directory)

        entry = {
            "sessionId": None,
            "role": "user",
            "userMessage": user_message,
            "timestamp": timestamp(),
            "isComplete": False,
            "repositoryPath": None,
        }
        with self._lock(key):
            self._write(key, [entry])
        logger.debug(f"Initialized session file {key}")

    def save_exchange(
        self,
        filename: str,
        user_message: str,
        responses: list[dict[str, Any]],
        is_complete: bool,
        session_id: str | None = None,
        extracted_session_id: str | None = None,
        repository_path: str | None = None,
    ) -> None:
        """
        Merge one snapshot of an exchange into the session file.

        Args:
            filename: Session filename or key
            user_message: Prompt the exchange answers
            responses: Full accumulated response records (not a delta)
            is_complete: Whether the exchange has finished
            session_id: Session id the CLI was resumed with, if any
            extracted_session_id: Session id reported by the CLI, if any
            repository_path: Working directory of the exchange

        Raises:
            SessionLockError: If the file lock cannot be acquired in time
        """
        key = self.key(filename)
        if not self.storage.exists(self.directory):
            self.storage.make_directory(self.directory)

        with self._lock(key):
            entries = self._load(key)
            merge_exchange(
                entries,
                user_message=user_message,
                session_id=session_id or extracted_session_id,
                responses=responses,
                is_complete=is_complete,
                repository_path=repository_path,
            )
            self._write(key, entries)

    def save_user_message(
        self,
        filename: str,
        user_message: str,
        session_id: str | None = None,
        repository_path: str | None = None,
    ) -> None:
        """Record a user message before any response exists."""
        self.save_exchange(
            filename,
            user_message,
            responses=[],
            is_complete=False,
            session_id=session_id,
            repository_path=repository_path,
        )

    def trailing_incomplete(self, filename: str) -> dict[str, Any] | None:
        """The last entry if it is still incomplete."""
        entries = self.read(filename)
        if entries and not entries[-1].get("isComplete"):
            return entries[-1]
        return None
