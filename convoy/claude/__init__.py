"""Claude CLI integration: stream parsing and process supervision."""

from convoy.claude.parser import extract_session_id, extract_text_content, is_uuid, parse_line
from convoy.claude.supervisor import (
    ProcessRequest,
    ProcessResult,
    ProcessSupervisor,
    ProcessTable,
)

__all__ = [
    "ProcessRequest",
    "ProcessResult",
    "ProcessSupervisor",
    "ProcessTable",
    "extract_session_id",
    "extract_text_content",
    "is_uuid",
    "parse_line",
]
