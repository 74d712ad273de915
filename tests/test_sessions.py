"""Tests for session storage, locking and the merge rule."""

import json
import threading
import time

import pytest

from convoy.exceptions import SessionLockError
from convoy.sessions import FileLock, LocalStorage, SessionStore, merge_exchange


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "storage")


@pytest.fixture
def store(storage):
    return SessionStore(storage, lock_timeout=2)


class TestLocalStorage:
    """Tests for the blob store."""

    def test_put_creates_parents(self, storage):
        """Test put writes through missing directories."""
        storage.put("a/b/c.json", "[]")
        assert storage.exists("a/b/c.json")
        assert storage.get("a/b/c.json") == "[]"

    def test_put_leaves_no_temp_files(self, storage):
        """Atomic replace cleans up its temp file."""
        storage.put("dir/file.json", "1")
        storage.put("dir/file.json", "2")
        assert [p.name for p in storage.path("dir").iterdir()] == ["file.json"]
        assert storage.get("dir/file.json") == "2"

    def test_delete(self, storage):
        """Test deleting files and directories."""
        storage.put("dir/file.json", "1")
        assert storage.delete("dir/file.json") is True
        assert storage.delete("dir") is True
        assert storage.delete("dir") is False


class TestFileLock:
    """Tests for the advisory file lock."""

    def test_lock_file_named_by_digest(self, tmp_path):
        """Test the lock path is derived from the key's md5."""
        lock = FileLock(tmp_path, "claude-sessions/a.json")
        assert lock.lock_path.name.startswith("file_lock_")
        assert lock.lock_path.suffix == ".lock"

    def test_context_manager(self, tmp_path):
        """Test acquire and release through with."""
        lock = FileLock(tmp_path, "key")
        with lock:
            assert lock.locked
        assert not lock.locked

    def test_second_holder_times_out(self, tmp_path):
        """Test a contended lock raises after its timeout."""
        with FileLock(tmp_path, "key"):
            contender = FileLock(tmp_path, "key", timeout=0.2)
            start = time.monotonic()
            with pytest.raises(SessionLockError):
                contender.acquire()
            assert time.monotonic() - start >= 0.2

    def test_different_keys_do_not_contend(self, tmp_path):
        """Test locks on different keys are independent."""
        with FileLock(tmp_path, "a"):
            with FileLock(tmp_path, "b", timeout=0.1) as other:
                assert other.locked

    def test_released_lock_can_be_taken(self, tmp_path):
        """Test a waiter gets the lock once it is released."""
        holder = FileLock(tmp_path, "key")
        holder.acquire()

        def release_soon():
            time.sleep(0.2)
            holder.release()

        thread = threading.Thread(target=release_soon)
        thread.start()
        with FileLock(tmp_path, "key", timeout=5) as waiter:
            assert waiter.locked
        thread.join()


class TestMergeExchange:
    """Tests for the pure merge rule."""

    def test_append_to_empty(self):
        """Test the first snapshot creates an entry."""
        entries = merge_exchange([], "hello", "s1", [{"type": "x"}], False, "/p")
        assert len(entries) == 1
        assert entries[0]["userMessage"] == "hello"
        assert entries[0]["sessionId"] == "s1"
        assert entries[0]["isComplete"] is False

    def test_update_in_place_preserves_timestamp(self):
        """Test an incomplete entry with the same message is replaced in place."""
        entries = [
            {
                "sessionId": None,
                "role": "user",
                "userMessage": "hello",
                "timestamp": "2026-01-01T00:00:00+00:00",
                "isComplete": False,
                "repositoryPath": None,
            }
        ]
        merge_exchange(entries, "hello", "s1", [{"n": 1}, {"n": 2}], True, "/p")

        assert len(entries) == 1
        assert entries[0]["timestamp"] == "2026-01-01T00:00:00+00:00"
        assert entries[0]["rawJsonResponses"] == [{"n": 1}, {"n": 2}]
        assert entries[0]["isComplete"] is True
        assert entries[0]["responseTimestamp"] is not None
        assert entries[0]["sessionId"] == "s1"

    def test_complete_entry_is_not_reopened(self):
        """Test a snapshot after completion appends."""
        entries = merge_exchange([], "hello", "s1", [{"n": 1}], True, None)
        merge_exchange(entries, "hello", "s1", [{"n": 2}], False, None)
        assert len(entries) == 2

    def test_different_message_appends(self):
        """Test an incomplete entry for another message is left alone."""
        entries = merge_exchange([], "first", "s1", [], False, None)
        merge_exchange(entries, "second", "s1", [], False, None)
        assert [e["userMessage"] for e in entries] == ["first", "second"]

    def test_session_id_generated_when_unknown(self):
        """Test a new entry without any session id gets a uuid."""
        entries = merge_exchange([], "hello", None, [], False, None)
        assert len(entries[0]["sessionId"]) == 36


class TestSessionStore:
    """Tests for SessionStore."""

    def test_key_prefix(self, store):
        """Test filenames are placed in the sessions directory once."""
        assert store.key("a.json") == "claude-sessions/a.json"
        assert store.key("claude-sessions/a.json") == "claude-sessions/a.json"

    def test_initialize_overwrites(self, store):
        """Test initialize replaces existing content with one entry."""
        store.save_exchange("a.json", "old", [{"x": 1}], True)
        store.initialize("a.json", "new message")

        entries = store.read("a.json")
        assert len(entries) == 1
        assert entries[0]["userMessage"] == "new message"
        assert entries[0]["sessionId"] is None
        assert entries[0]["repositoryPath"] is None
        assert entries[0]["isComplete"] is False

    def test_two_snapshots_update_one_entry(self, store):
        """Test progress snapshots for one message merge into one entry."""
        store.initialize("a.json", "hello")
        first_timestamp = store.read("a.json")[0]["timestamp"]

        store.save_exchange("a.json", "hello", [{"n": 1}], False, extracted_session_id="abc")
        store.save_exchange("a.json", "hello", [{"n": 1}, {"n": 2}], False, extracted_session_id="abc")

        entries = store.read("a.json")
        assert len(entries) == 1
        assert entries[0]["timestamp"] == first_timestamp
        assert len(entries[0]["rawJsonResponses"]) == 2
        assert entries[0]["sessionId"] == "abc"

    def test_snapshot_after_completion_appends(self, store):
        """Test a new exchange after completion gets its own entry."""
        store.save_exchange("a.json", "hello", [{"n": 1}], True)
        store.save_user_message("a.json", "again")

        entries = store.read("a.json")
        assert len(entries) == 2
        assert entries[1]["userMessage"] == "again"
        assert entries[1]["rawJsonResponses"] == []

    def test_file_is_pretty_json(self, store):
        """Test the document on disk is a JSON array."""
        store.save_exchange("a.json", "hello", [], False)
        data = json.loads(store.path("a.json").read_text())
        assert isinstance(data, list)

    def test_trailing_incomplete(self, store):
        """Test trailing_incomplete only returns an unfinished last entry."""
        assert store.trailing_incomplete("a.json") is None
        store.initialize("a.json", "hello")
        assert store.trailing_incomplete("a.json")["userMessage"] == "hello"
        store.save_exchange("a.json", "hello", [{"n": 1}], True)
        assert store.trailing_incomplete("a.json") is None

    def test_corrupt_file_starts_fresh(self, store):
        """Test an unreadable document is replaced instead of crashing."""
        store.storage.put("claude-sessions/a.json", "{broken")
        store.save_exchange("a.json", "hello", [], False)
        assert len(store.read("a.json")) == 1

    def test_locked_file_raises(self, store):
        """Test a save fails when another writer holds the lock."""
        store.lock_timeout = 0.2
        key = store.key("a.json")
        with FileLock(store.lock_dir, key):
            with pytest.raises(SessionLockError):
                store.save_exchange("a.json", "hello", [], False)

    def test_concurrent_writers_serialize(self, store):
        """Test writers for different messages never lose each other's entries."""
        store.lock_timeout = 10
        messages = [f"message {i}" for i in range(8)]

        threads = [
            threading.Thread(target=store.save_exchange, args=("a.json", m, [{"m": m}], True))
            for m in messages
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(e["userMessage"] for e in store.read("a.json")) == sorted(messages)
