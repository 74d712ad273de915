"""
TTL key-value cache backed by the Convoy database.

Used for short-lived cross-process state such as the pid of the Claude
process currently serving a conversation. Entries expire lazily on read.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

from convoy.persistence.repository import connect

logger = logging.getLogger(__name__)


class CacheStore:
    """
    Key-value store with per-entry time-to-live.

    Values are JSON-encoded so any simple Python value round-trips.
    """

    def __init__(self, db_path: Path | str, clock=time.time):
        self.db_path = Path(db_path)
        self._clock = clock
        self._conn = connect(self.db_path)
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, or default if missing or expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM cache WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return default
            if row["expires_at"] <= self._clock():
                self._conn.execute("DELETE FROM cache WHERE key = ?", (key,))
                logger.debug(f"Cache entry expired: {key}")
                return default
            return json.loads(row["value"])

    def put(self, key: str, value: Any, ttl: float) -> None:
        """Store value for ttl seconds, replacing any previous entry."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO cache (key, value, expires_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  expires_at = excluded.expires_at""",
                (key, json.dumps(value), self._clock() + ttl),
            )

    def forget(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM cache WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()
