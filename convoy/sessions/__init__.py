"""Session file storage, locking and merge rules."""

from convoy.sessions.lock import FileLock
from convoy.sessions.storage import LocalStorage
from convoy.sessions.store import SessionStore, merge_exchange

__all__ = [
    "FileLock",
    "LocalStorage",
    "SessionStore",
    "merge_exchange",
]
