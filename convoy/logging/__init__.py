"""
Convoy Logging System.

Provides structured JSONL logging for:
- Repository staging phases (refresh, copy, rename, race lost)
- Claude CLI executions (command, pid, exit code, response count)
- Job lifecycle events (started, retrying, aborted, failed)

Usage:
    from convoy.logging import stage_logger, StageLogEntry, now_iso

    entry = StageLogEntry(timestamp=now_iso(), event="copied", repository="app")
    stage_logger.info(entry.to_json())

Logs are written to ~/.convoy/logs/:
    - stage.jsonl: staging events
    - process.jsonl: Claude CLI executions
    - jobs.jsonl: job lifecycle events
"""

import threading
from typing import Any

from .config import LogConfig, get_config, set_config
from .entries import JobLogEntry, ProcessLogEntry, StageLogEntry, now_iso
from .handlers import create_jsonl_logger

# Lazy-initialized loggers to avoid creating files before needed
_loggers: dict[str, Any] = {}
_init_lock = threading.Lock()


def _ensure_loggers() -> None:
    """Initialize loggers on first use."""
    if _loggers:
        return

    with _init_lock:
        # Double-check after acquiring lock
        if _loggers:
            return

        config = get_config()

        channels = {
            "stage": (config.stage_log_path, config.stage_level),
            "process": (config.process_log_path, config.process_level),
            "job": (config.job_log_path, config.job_level),
        }
        # Publish all three at once, readers check _loggers without the lock
        _loggers.update(
            {
                channel: create_jsonl_logger(
                    channel,
                    path,
                    level=level,
                    max_bytes=config.max_file_size_bytes,
                    backup_count=config.backup_count,
                )
                for channel, (path, level) in channels.items()
            }
        )


def reset_loggers() -> None:
    """Drop initialized loggers so the next use picks up a new config."""
    with _init_lock:
        for logger in _loggers.values():
            for handler in list(logger.handlers):
                handler.close()
            logger.handlers.clear()
        _loggers.clear()


class _LazyLogger:
    """Lazy wrapper that initializes the actual logger on first use."""

    def __init__(self, name: str):
        self._name = name

    def _get_logger(self) -> Any:
        _ensure_loggers()
        return _loggers[self._name]

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().exception(msg, *args, **kwargs)


# Public logger instances
stage_logger = _LazyLogger("stage")
process_logger = _LazyLogger("process")
job_logger = _LazyLogger("job")


__all__ = [
    # Loggers
    "stage_logger",
    "process_logger",
    "job_logger",
    # Log entries
    "StageLogEntry",
    "ProcessLogEntry",
    "JobLogEntry",
    # Utilities
    "now_iso",
    "reset_loggers",
    # Config
    "LogConfig",
    "get_config",
    "set_config",
]
