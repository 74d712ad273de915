"""Tests for exception hierarchy."""

import pytest

from convoy.exceptions import (
    ChainAbortedError,
    ConfigError,
    ConvoyError,
    GitCommandError,
    ProcessFailureError,
    ResourceMissingError,
    SessionLockError,
    StageFailureError,
    ValidationFailureError,
    error_text,
)


class TestConvoyError:
    """Tests for base ConvoyError."""

    def test_basic_error(self):
        """Test basic error creation."""
        err = ConvoyError("Something went wrong")
        assert err.message == "Something went wrong"
        assert err.details == {}
        assert str(err) == "Something went wrong"

    def test_error_with_details(self):
        """Test error with details dict."""
        err = ConvoyError("Error occurred", {"path": "/tmp/x", "code": 2})
        assert err.details == {"path": "/tmp/x", "code": 2}
        assert "path" in str(err)
        assert "/tmp/x" in str(err)

    def test_base_is_retriable(self):
        """Unknown failures are worth another attempt."""
        assert ConvoyError("x").retriable is True


class TestRetriability:
    """Tests for the retriable flag consulted by the queue."""

    @pytest.mark.parametrize(
        "error",
        [
            ConfigError("bad"),
            ResourceMissingError("gone"),
            ValidationFailureError("invalid"),
            ChainAbortedError("stop", conversation_id=1),
        ],
    )
    def test_permanent_errors(self, error):
        """Errors that would fail identically are not retriable."""
        assert error.retriable is False
        assert isinstance(error, ConvoyError)

    @pytest.mark.parametrize(
        "error",
        [
            StageFailureError("copy failed"),
            GitCommandError("git failed"),
            ProcessFailureError("crashed"),
            SessionLockError("locked", path="a.json", timeout=10),
        ],
    )
    def test_transient_errors(self, error):
        """Transient failures keep the default retriable flag."""
        assert error.retriable is True


class TestSpecificErrors:
    """Tests for errors carrying extra attributes."""

    def test_git_command_error(self):
        """Test GitCommandError exposes command details."""
        err = GitCommandError(
            "git fetch failed", command=["git", "fetch"], exit_code=128, stderr="no remote"
        )
        assert err.command == ["git", "fetch"]
        assert err.exit_code == 128
        assert err.stderr == "no remote"
        assert "128" in str(err)

    def test_process_failure_error(self):
        """Test ProcessFailureError keeps exit code and stderr."""
        err = ProcessFailureError("no output", exit_code=1, stderr="boom")
        assert err.exit_code == 1
        assert err.stderr == "boom"

    def test_session_lock_error(self):
        """Test SessionLockError records path and timeout."""
        err = SessionLockError("busy", path="claude-sessions/a.json", timeout=10.0)
        assert err.path == "claude-sessions/a.json"
        assert err.details["timeout"] == 10.0

    def test_chain_aborted_error(self):
        """Test ChainAbortedError records the conversation."""
        err = ChainAbortedError("Repository gone", conversation_id=7)
        assert err.conversation_id == 7
        assert err.message == "Repository gone"


class TestErrorText:
    """Tests for error_text."""

    def test_convoy_error_drops_details(self):
        err = ProcessFailureError("Claude produced no output (exit code 1)", exit_code=1, stderr="boom")
        assert "Details" in str(err)
        assert error_text(err) == "Claude produced no output (exit code 1)"

    def test_other_exceptions_use_str(self):
        assert error_text(OSError("disk full")) == "disk full"
