"""
Conversation Service - the entry point for starting and steering conversations.

Starting a conversation creates its row, dispatches the
[initialize -> send] chain and, in parallel, a hot-cache warm so the next
conversation on the same repository finds a ready copy.

Methods that dispatch jobs must be called from a running event loop.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any

from convoy.exceptions import ResourceMissingError, ValidationFailureError
from convoy.jobs.base import JobContext
from convoy.jobs.cleanup import DeleteProjectDirectoryJob
from convoy.jobs.initialize import InitializeSessionJob
from convoy.jobs.queue import JobQueue
from convoy.jobs.send import SendMessageJob
from convoy.jobs.warm import WarmHotCacheJob
from convoy.persistence.models import Conversation, ConversationMode
from convoy.staging.diff import read_diff

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100


def make_title(message: str) -> str:
    """First 100 characters of the message, with an ellipsis when cut."""
    if len(message) > TITLE_LENGTH:
        return message[:TITLE_LENGTH] + "..."
    return message


def new_project_id() -> str:
    return uuid.uuid4().hex[:13]


class ConversationService:
    """
    Conversation lifecycle operations.

    Args:
        ctx: Shared job context (config, catalog, sessions, supervisor)
        queue: Queue the pipeline jobs are dispatched to
    """

    def __init__(self, ctx: JobContext, queue: JobQueue):
        self.ctx = ctx
        self.queue = queue

    def get(self, conversation_id: int) -> Conversation:
        """Fetch a conversation or raise ResourceMissingError."""
        conversation = self.ctx.repository.get_conversation(conversation_id)
        if conversation is None:
            raise ResourceMissingError(
                f"Conversation {conversation_id} not found",
                {"conversation_id": conversation_id},
            )
        return conversation

    def start(
        self,
        message: str,
        repository: str | None = None,
        mode: ConversationMode | str = ConversationMode.PLAN,
        agent_id: int | None = None,
        user_id: int | None = None,
    ) -> Conversation:
        """
        Create a conversation and dispatch its pipeline.

        Raises:
            ValidationFailureError: Empty message, unknown agent, or a blank
                repository outside plan mode
        """
        if not message or not message.strip():
            raise ValidationFailureError("The message field is required.")

        mode = ConversationMode(mode)
        repository = repository or None
        if repository is None and mode != ConversationMode.PLAN:
            raise ValidationFailureError("A repository is required when not in planning mode.")

        if agent_id is not None and self.ctx.repository.get_agent(agent_id) is None:
            raise ValidationFailureError(f"Agent {agent_id} not found", {"agent_id": agent_id})

        config = self.ctx.config
        project_id = new_project_id()
        if repository is None:
            project_directory = config.blank_project_directory
        else:
            project_directory = f"{config.projects_directory.rstrip('/')}/{project_id}"

        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        conversation = self.ctx.repository.create_conversation(
            Conversation(
                user_id=user_id,
                title=make_title(message),
                message=message,
                repository=repository,
                project_directory=project_directory,
                filename=f"{config.sessions_directory}/{stamp}-session-{project_id}.json",
                is_processing=True,
                mode=mode,
                agent_id=agent_id,
            )
        )
        conversation_id: int = conversation.id  # type: ignore[assignment]

        self.queue.dispatch_chain(
            [
                InitializeSessionJob(conversation_id, message, repository, project_directory),
                SendMessageJob(conversation_id, message, repository, project_directory),
            ]
        )
        if repository is not None:
            self.queue.dispatch(WarmHotCacheJob(repository))

        logger.info(f"Started conversation {conversation_id} on {repository or 'blank repository'}")
        return conversation

    def reply(self, conversation_id: int, message: str) -> Conversation:
        """Send a follow-up message, resuming the Claude session."""
        if not message or not message.strip():
            raise ValidationFailureError("The message field is required.")

        conversation = self.get(conversation_id)
        if conversation.is_processing:
            raise ValidationFailureError(f"Conversation {conversation_id} is still processing")

        self._dispatch_send(conversation, message)
        return self.get(conversation_id)

    def resend(self, conversation_id: int) -> Conversation:
        """
        Dispatch a send for the last message that never got an answer.

        Raises:
            ValidationFailureError: If the conversation is busy or its last
                exchange is complete
        """
        conversation = self.get(conversation_id)
        if conversation.is_processing:
            raise ValidationFailureError(f"Conversation {conversation_id} is still processing")

        entry = self.ctx.sessions.trailing_incomplete(conversation.filename)
        if entry is None or not entry.get("userMessage"):
            raise ValidationFailureError(
                f"Conversation {conversation_id} has no unanswered message to resend"
            )

        self._dispatch_send(conversation, entry["userMessage"])
        return self.get(conversation_id)

    def _dispatch_send(self, conversation: Conversation, message: str) -> None:
        self.ctx.repository.update_conversation(
            conversation.id,  # type: ignore[arg-type]
            is_processing=True,
            error_message=None,
        )
        self.queue.dispatch(
            SendMessageJob(
                conversation.id,  # type: ignore[arg-type]
                message,
                conversation.repository,
                conversation.project_directory,
            )
        )

    async def stop(self, conversation_id: int) -> bool:
        """
        Clear the processing flag, then stop the running Claude process.

        The send step re-reads the flag once the process exits and treats a
        cleared flag as a stop rather than a failure.

        Returns:
            True if a process was on record
        """
        self.get(conversation_id)
        self.ctx.repository.update_conversation(conversation_id, is_processing=False)
        return await asyncio.to_thread(self.ctx.supervisor.terminate, conversation_id)

    def archive(self, conversation_id: int) -> Conversation:
        """Archive a conversation and delete its private working copy."""
        conversation = self.get(conversation_id)
        self.ctx.repository.update_conversation(conversation_id, archived=True)

        if not conversation.is_blank:
            self.queue.dispatch(
                DeleteProjectDirectoryJob(
                    conversation_id,
                    conversation.project_directory,
                    conversation.repository,
                )
            )
        return self.get(conversation_id)

    def unarchive(self, conversation_id: int) -> Conversation:
        self.get(conversation_id)
        self.ctx.repository.update_conversation(conversation_id, archived=False)
        return self.get(conversation_id)

    def set_mode(self, conversation_id: int, mode: ConversationMode | str) -> Conversation:
        self.get(conversation_id)
        self.ctx.repository.update_conversation(conversation_id, mode=ConversationMode(mode))
        return self.get(conversation_id)

    def list_conversations(self, archived: bool = False, user_id: int | None = None) -> list[Conversation]:
        return self.ctx.repository.list_conversations(archived=archived, user_id=user_id)

    def session(self, conversation_id: int) -> list[dict[str, Any]]:
        """Session entries of a conversation."""
        conversation = self.get(conversation_id)
        return self.ctx.sessions.read(conversation.filename)

    def diff(self, conversation_id: int) -> str:
        """Stored diff of a conversation's project directory."""
        conversation = self.get(conversation_id)
        if not conversation.project_directory:
            return ""
        return read_diff(self.ctx.config.resolve_path(conversation.project_directory))
