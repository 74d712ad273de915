"""
JSONL output for Convoy's structured logs.

Log entries arrive as JSON strings (``entry.to_json()``). The formatter
stamps each line with its channel (stage, process, job) and level so the
three files can be concatenated and filtered together. Prose messages
logged to the same loggers are wrapped into the same shape.
"""

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path


class JSONLineFormatter(logging.Formatter):
    """Render a record as one JSON object tagged with its channel."""

    def __init__(self, channel: str):
        super().__init__()
        self.channel = channel

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            data = None

        if not isinstance(data, dict):
            data = {
                "timestamp": datetime.fromtimestamp(record.created).astimezone().isoformat(),
                "message": message,
                "logger": record.name,
            }

        data.setdefault("channel", self.channel)
        data.setdefault("level", record.levelname.lower())
        if record.exc_info:
            data["traceback"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str, ensure_ascii=False)


class JSONLRotatingHandler(RotatingFileHandler):
    """
    Size-rotated JSONL file for one channel.

    The file (and its directory) is only created by the first record.
    """

    def __init__(
        self,
        filename: str | Path,
        channel: str,
        max_bytes: int = 10_000_000,
        backup_count: int = 5,
    ):
        path = Path(filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            str(path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        self.setFormatter(JSONLineFormatter(channel))


def create_jsonl_logger(
    channel: str,
    filepath: Path,
    level: str = "INFO",
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
) -> logging.Logger:
    """
    Build the ``convoy.<channel>`` logger writing to filepath.

    Existing handlers are closed first, so calling this again after a
    config change moves the channel to the new file.
    """
    logger = logging.getLogger(f"convoy.{channel}")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    logger.addHandler(
        JSONLRotatingHandler(filepath, channel, max_bytes=max_bytes, backup_count=backup_count)
    )
    logger.propagate = False
    return logger
