"""
Parsing helpers for the Claude CLI stream-json output.

Each stdout line is one JSON record. The ones Convoy cares about:

    {"type": "system", "subtype": "init", "session_id": "..."}
    {"type": "assistant", "message": {"content": [{"type": "text", "text": "..."}]}}
    {"type": "content", "content": {"type": "text", "text": "..."}}
    {"type": "result", "session_id": "...", "result": "..."}
"""

import json
import re
from typing import Any

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Checked in order after the system/init record
SESSION_ID_FIELDS = ("sessionId", "session_id", "id", "conversationId")


def is_uuid(value: str | None) -> bool:
    """True if value is a canonical 8-4-4-4-12 hex UUID."""
    return bool(value) and bool(UUID_PATTERN.match(value))  # type: ignore[arg-type]


def parse_line(line: str) -> dict[str, Any] | None:
    """
    Decode one stdout line.

    Returns:
        The record, or None for blank lines, invalid JSON and non-object values
    """
    line = line.strip()
    if not line:
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def extract_session_id(record: dict[str, Any]) -> str | None:
    """Find the CLI session id in a record, if it carries one."""
    if record.get("type") == "system" and record.get("subtype") == "init":
        if record.get("session_id"):
            return str(record["session_id"])

    for key in SESSION_ID_FIELDS:
        if record.get(key):
            return str(record[key])
    return None


def extract_text_content(records: list[dict[str, Any]]) -> str:
    """Concatenate the text Claude produced across all records."""
    parts: list[str] = []

    for record in records:
        record_type = record.get("type")
        if record_type == "system":
            continue

        if record_type == "content":
            content = record.get("content")
            if isinstance(content, str):
                parts.append(content)
            elif isinstance(content, dict) and content.get("type") == "text":
                parts.append(content.get("text", ""))

        elif record_type == "assistant":
            message = record.get("message") or {}
            blocks = message.get("content") if isinstance(message, dict) else None
            if isinstance(blocks, list):
                for block in blocks:
                    if isinstance(block, dict) and block.get("type") == "text":
                        parts.append(block.get("text", ""))

    return "".join(parts)
