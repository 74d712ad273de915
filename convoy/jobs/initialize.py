"""
Initialize step: first half of the conversation chain.

Writes the first session entry, then gives the conversation a working
copy. Named repositories take over the pre-warmed hot directory (warming it
on the spot when cold) and run the repository's deploy script; blank
conversations share the base directory and never get a private copy.

Any failure here is recorded on the conversation and stops the chain, so
the send step never runs against a missing directory.
"""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any

from convoy.exceptions import (
    ChainAbortedError,
    ResourceMissingError,
    StageFailureError,
    error_text,
)
from convoy.jobs.base import Job, JobContext, register
from convoy.persistence.models import Conversation, JobKind, ResourceDependencies

logger = logging.getLogger(__name__)

# A concurrent start of the same repository can take the hot copy first
CLAIM_ATTEMPTS = 2


@register
class InitializeSessionJob(Job):
    """Prepare the session file and project directory of a new conversation."""

    kind = JobKind.INITIALIZE_SESSION

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
    def from_payload(cls, payload: dict[str, Any]) -> "InitializeSessionJob":
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

    def _abort(self, ctx: JobContext, message: str) -> ChainAbortedError:
        ctx.repository.update_conversation(
            self.conversation_id, is_processing=False, error_message=message
        )
        logger.error(f"Conversation {self.conversation_id}: {message}")
        return ChainAbortedError(message, conversation_id=self.conversation_id)

    async def handle(self, ctx: JobContext) -> None:
        conversation = ctx.repository.get_conversation(self.conversation_id)
        if conversation is None:
            raise ChainAbortedError(
                f"Conversation {self.conversation_id} no longer exists",
                conversation_id=self.conversation_id,
            )

        await asyncio.to_thread(ctx.sessions.initialize, conversation.filename, self.message)

        if conversation.is_blank:
            root = await asyncio.to_thread(ctx.stager.bootstrap_blank_base)
            logger.info(f"Conversation {self.conversation_id} uses blank repository at {root}")
            return

        destination = ctx.config.resolve_path(conversation.project_directory or "")
        await self._claim_hot_directory(ctx, conversation, destination)
        await self._run_deploy_script(ctx, conversation.repository, destination)  # type: ignore[arg-type]
        logger.info(
            f"Moved {conversation.repository} into {destination} for conversation {self.conversation_id}"
        )

    async def _warm(self, ctx: JobContext, name: str) -> Path:
        try:
            hot = await asyncio.to_thread(ctx.stager.ensure_hot, name)
        except ResourceMissingError:
            raise self._abort(ctx, f"Repository '{name}' not found. It may have been deleted.")
        except StageFailureError as e:
            raise self._abort(ctx, f"Failed to prepare repository: {e.message}")

        if not hot.exists():
            raise self._abort(ctx, "Failed to prepare repository for conversation")
        return hot

    async def _claim_hot_directory(
        self, ctx: JobContext, conversation: Conversation, destination: Path
    ) -> None:
        name = conversation.repository or ""

        for attempt in range(1, CLAIM_ATTEMPTS + 1):
            hot = ctx.config.hot_path(name)
            if not hot.exists():
                hot = await self._warm(ctx, name)

            try:
                await asyncio.to_thread(_move_directory, hot, destination)
            except FileNotFoundError:
                logger.warning(
                    f"Hot directory for {name} was taken concurrently (attempt {attempt}/{CLAIM_ATTEMPTS})"
                )
                continue
            except OSError as e:
                raise self._abort(ctx, f"Failed to prepare repository: {e}")
            break

        if not destination.exists():
            raise self._abort(ctx, "Failed to move repository into project directory")

    async def _run_deploy_script(self, ctx: JobContext, name: str, destination: Path) -> None:
        record = ctx.repository.get_repository(name)
        if record is None or not record.deploy_script:
            return

        logger.info(f"Running deploy script for {name} in {destination}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                ["bash", "-c", record.deploy_script],
                cwd=str(destination),
                env=ctx.config.process_env(),
                capture_output=True,
                text=True,
                timeout=ctx.config.deploy_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Deploy script for {name} could not complete: {e}")
            return

        if result.returncode == 0:
            logger.info(f"Deploy script for {name} completed")
        else:
            logger.warning(
                f"Deploy script for {name} exited with {result.returncode}: {result.stderr.strip()[:500]}"
            )

    async def failed(self, ctx: JobContext, exc: BaseException) -> None:
        ctx.repository.update_conversation(
            self.conversation_id,
            is_processing=False,
            error_message=f"Failed to initialize conversation: {error_text(exc)}",
        )


def _move_directory(source: Path, destination: Path) -> None:
    """Move source to destination, replacing a stale destination."""
    if destination.exists():
        shutil.rmtree(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))
