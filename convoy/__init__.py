"""
Convoy - run Claude Code conversations against disposable repository copies.

Each conversation gets its own working copy staged from a pre-warmed hot
cache, a supervised Claude CLI process, and a session file that is updated
as the answer streams in.
"""

__version__ = "0.1.0"

from convoy.exceptions import (
    ConvoyError,
    ConfigError,
    ResourceMissingError,
    StageFailureError,
    ProcessFailureError,
    ValidationFailureError,
)

__all__ = [
    "__version__",
    "ConvoyError",
    "ConfigError",
    "ResourceMissingError",
    "StageFailureError",
    "ProcessFailureError",
    "ValidationFailureError",
]
