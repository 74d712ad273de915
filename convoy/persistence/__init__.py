"""
Convoy Persistence Layer

SQLite-backed catalog (repositories, agents, conversations, failed jobs)
and a TTL cache for cross-process state.
"""

from convoy.persistence.cache import CacheStore
from convoy.persistence.models import (
    Agent,
    Conversation,
    ConversationMode,
    FailedJob,
    JobKind,
    Repository,
    ResourceDependencies,
)
from convoy.persistence.repository import ConvoyRepository

__all__ = [
    # Enums
    "ConversationMode",
    "JobKind",
    # Entities
    "Repository",
    "Agent",
    "Conversation",
    "FailedJob",
    "ResourceDependencies",
    # Stores
    "ConvoyRepository",
    "CacheStore",
]
