"""
Send step: drives one Claude exchange for a conversation.

The conversation's ``is_processing`` flag is the contract with everyone
watching it: this step is the one that clears it, whether the exchange
finished, failed, or never started because its preconditions were gone.
"""

import asyncio
import logging
from typing import Any

from convoy.claude.supervisor import ProcessRequest
from convoy.exceptions import ProcessFailureError, error_text
from convoy.jobs.base import Job, JobContext, register
from convoy.persistence.models import Conversation, ConversationMode, JobKind, ResourceDependencies
from convoy.staging.diff import capture_diff

logger = logging.getLogger(__name__)


@register
class SendMessageJob(Job):
    """Send a message to Claude and stream the answer into the session file."""

    kind = JobKind.SEND_MESSAGE

    def __init__(
        self,
        conversation_id: int,
        message: str,
        repository: str | None = None,
        project_directory: str | None = None,
    ):
        self.conversation_id = conversation_id
        self.message = message
        self.repository = repository
        self.project_directory = project_directory

    def payload(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message": self.message,
            "repository": self.repository,
            "project_directory": self.project_directory,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SendMessageJob":
        return cls(
            conversation_id=payload["conversation_id"],
            message=payload["message"],
            repository=payload.get("repository"),
            project_directory=payload.get("project_directory"),
        )

    def dependencies(self) -> ResourceDependencies:
        return ResourceDependencies(
            repository=self.repository,
            conversation_id=self.conversation_id,
            project_directory=self.project_directory,
        )

    def validate(self, ctx: JobContext) -> Conversation | None:
        """
        Re-read the conversation and check it can still be served.

        Returns:
            The fresh conversation, or None if the step must not run
        """
        conversation = ctx.repository.get_conversation(self.conversation_id)
        if conversation is None:
            logger.warning(f"Conversation {self.conversation_id} no longer exists")
            return None

        if not conversation.is_processing:
            logger.info(f"Conversation {self.conversation_id} is no longer processing, skipping send")
            return None

        if conversation.project_directory:
            project = ctx.config.resolve_path(conversation.project_directory)
            if not project.is_dir():
                ctx.repository.update_conversation(
                    self.conversation_id,
                    is_processing=False,
                    error_message=f"Project directory not found: {conversation.project_directory}",
                )
                logger.error(f"Project directory not found: {project}")
                return None

        return conversation

    def build_options(self, ctx: JobContext, conversation: Conversation) -> list[str]:
        mode = "plan" if conversation.mode == ConversationMode.PLAN else "bypassPermissions"
        options = ["--permission-mode", mode]

        if conversation.agent_id is not None:
            agent = ctx.repository.get_agent(conversation.agent_id)
            if agent and agent.prompt:
                options.extend(["--append-system-prompt", agent.prompt])
                logger.info(f"Adding system prompt of agent {agent.name} to conversation {conversation.id}")

        return options

    def _working_directory(self, ctx: JobContext, conversation: Conversation) -> str | None:
        if not conversation.project_directory:
            return None
        project = ctx.config.resolve_path(conversation.project_directory)
        if not project.is_dir():
            logger.warning(f"Project directory {project} does not exist, using the application root")
            return None
        return str(project)

    def _progress_sink(self, ctx: JobContext):
        def on_output(event: str, data: Any) -> None:
            if event == "session_id":
                current = ctx.repository.get_conversation(self.conversation_id)
                if current and not current.claude_session_id:
                    ctx.repository.update_conversation(self.conversation_id, claude_session_id=data)
            elif event == "response":
                ctx.repository.touch_conversation(self.conversation_id)
            elif event == "error":
                logger.debug(f"Claude stderr [{self.conversation_id}]: {data}")

        return on_output

    async def handle(self, ctx: JobContext) -> None:
        conversation = self.validate(ctx)
        if conversation is None:
            return

        try:
            options = self.build_options(ctx, conversation)

            await asyncio.to_thread(
                ctx.sessions.save_user_message,
                conversation.filename,
                self.message,
                conversation.claude_session_id,
                conversation.project_directory,
            )

            request = ProcessRequest(
                prompt=self.message,
                working_directory=self._working_directory(ctx, conversation),
                session_id=conversation.claude_session_id,
                options=options,
                session_file=conversation.filename,
                conversation_id=self.conversation_id,
            )
            result = await ctx.supervisor.run(request, self._progress_sink(ctx))

            current = ctx.repository.get_conversation(self.conversation_id)
            if result.session_id and current and not current.claude_session_id:
                ctx.repository.update_conversation(
                    self.conversation_id, claude_session_id=result.session_id
                )

            # A stop clears the flag before signalling the process
            if current is None or not current.is_processing:
                logger.info(
                    f"Conversation {self.conversation_id} was stopped "
                    f"(exit code {result.exit_code}, responses={result.response_count})"
                )
                return

            if not result.responses and not result.success:
                raise ProcessFailureError(
                    f"Claude produced no output (exit code {result.exit_code})",
                    exit_code=result.exit_code,
                    stderr=result.stderr,
                )

            # Let watchers see the final snapshot before the flag drops
            await asyncio.sleep(ctx.config.settle_delay)

            if conversation.project_directory:
                project = ctx.config.resolve_path(conversation.project_directory)
                await asyncio.to_thread(capture_diff, project, ctx.config.git_timeout)

            ctx.repository.update_conversation(self.conversation_id, is_processing=False)
            logger.info(
                f"Conversation {self.conversation_id} exchange finished "
                f"(success={result.success}, responses={result.response_count})"
            )
        except Exception as e:
            ctx.repository.update_conversation(
                self.conversation_id, is_processing=False, error_message=error_text(e)
            )
            logger.error(f"Error sending message for conversation {self.conversation_id}: {e}")
            raise

    async def failed(self, ctx: JobContext, exc: BaseException) -> None:
        ctx.repository.update_conversation(
            self.conversation_id,
            is_processing=False,
            error_message=f"Failed to send message to Claude: {error_text(exc)}",
        )
