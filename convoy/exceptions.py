"""
Convoy - Exception Hierarchy

All Convoy-specific exceptions inherit from ConvoyError.

Each class carries a ``retriable`` flag that the job queue consults before
spending another attempt: an error that will fail identically on the next
run (a deleted repository, an unmet precondition) skips the remaining tries.
"""

from typing import Any


class ConvoyError(Exception):
    """Base exception for all Convoy-related errors."""

    retriable: bool = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Configuration Errors
class ConfigError(ConvoyError):
    """Raised when configuration is invalid or missing."""

    retriable = False


# Resource Errors
class ResourceMissingError(ConvoyError):
    """Raised when a referenced repository, directory or conversation is gone."""

    retriable = False


class StageFailureError(ConvoyError):
    """Raised when a copy, rename or move of a staged directory fails."""

    pass


class GitCommandError(ConvoyError):
    """Raised when a git command exits non-zero, times out or cannot start."""

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str | None = None,
    ):
        super().__init__(
            message,
            {"command": command or [], "exit_code": exit_code, "stderr": stderr},
        )
        self.command = command or []
        self.exit_code = exit_code
        self.stderr = stderr


# Process Errors
class ProcessFailureError(ConvoyError):
    """Raised when the Claude CLI cannot run or produces nothing usable."""

    def __init__(self, message: str, exit_code: int | None = None, stderr: str | None = None):
        super().__init__(message, {"exit_code": exit_code, "stderr": stderr})
        self.exit_code = exit_code
        self.stderr = stderr


# Validation Errors
class ValidationFailureError(ConvoyError):
    """Raised when preconditions for an operation are not met."""

    retriable = False


# Session Errors
class SessionLockError(ConvoyError):
    """Raised when the advisory lock on a session file cannot be acquired."""

    def __init__(self, message: str, path: str, timeout: float):
        super().__init__(message, {"path": path, "timeout": timeout})
        self.path = path
        self.timeout = timeout


# Job Errors
class ChainAbortedError(ConvoyError):
    """Raised by a job that has already recorded its failure and must stop the chain.

    The queue neither retries nor dead-letters this error.
    """

    retriable = False

    def __init__(self, message: str, conversation_id: int | None = None):
        super().__init__(message, {"conversation_id": conversation_id})
        self.conversation_id = conversation_id


def error_text(exc: BaseException) -> str:
    """Text of an exception fit for a conversation's error field (no details dump)."""
    if isinstance(exc, ConvoyError):
        return exc.message
    return str(exc)
